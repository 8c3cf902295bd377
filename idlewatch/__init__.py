"""idlewatch: find Kubernetes workloads that receive no traffic."""

__version__ = "0.1.0"
