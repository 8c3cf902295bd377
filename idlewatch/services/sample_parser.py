"""Parser for Prometheus instant-vector responses rendered as text.

One response is a newline-separated list of rows::

    {exported_namespace="polo",host="polo.test.com",ingress="polo-api",path="/"} => 0 @[1571234567.123]

The label body is parsed into a name/value mapping and then projected onto
the components requested by the caller, so label order in the input never
changes the resulting key.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable

import structlog
from structlog.typing import FilteringBoundLogger

EntityKey = tuple[str, ...]

_METRIC_NAME = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_ESCAPES = {'"': '"', "\\": "\\", "n": "\n", "t": "\t"}

EMPTY_BODY = "{}"


class MalformedRowError(ValueError):
    """A row does not follow the response grammar."""


@dataclass(frozen=True)
class ParsedSample:
    """Entity keys parsed from one response."""

    keys: frozenset[EntityKey] = field(default_factory=frozenset)
    data_rows: int = 0
    skipped_rows: int = 0

    @property
    def has_data(self) -> bool:
        """True when the backend returned at least one data row."""
        return self.data_rows > 0


def _skip_spaces(line: str, pos: int) -> int:
    while pos < len(line) and line[pos] == " ":
        pos += 1
    return pos


def _read_quoted(line: str, pos: int) -> tuple[str, int]:
    """Read a double-quoted value starting right after the opening quote."""
    chars: list[str] = []
    while pos < len(line):
        ch = line[pos]
        if ch == "\\":
            if pos + 1 >= len(line):
                break
            nxt = line[pos + 1]
            chars.append(_ESCAPES.get(nxt, nxt))
            pos += 2
            continue
        if ch == '"':
            return "".join(chars), pos + 1
        chars.append(ch)
        pos += 1
    raise MalformedRowError("unterminated label value")


def parse_labels(line: str) -> tuple[dict[str, str], int]:
    """
    Parse the label body at the start of a row.

    Args:
        line: Row text, optionally prefixed by a metric name

    Returns:
        Tuple of (labels, position right after the closing brace)

    Raises:
        MalformedRowError: If the body is not a well-formed label set
    """
    labels: dict[str, str] = {}
    pos = 0

    metric = _METRIC_NAME.match(line)
    if metric:
        labels["__name__"] = metric.group()
        pos = metric.end()

    if line[pos:pos + 1] != "{":
        raise MalformedRowError("expected '{' at start of label set")
    pos += 1

    while True:
        pos = _skip_spaces(line, pos)
        if line[pos:pos + 1] == "}":
            return labels, pos + 1

        name_match = _LABEL_NAME.match(line, pos)
        if not name_match:
            raise MalformedRowError(f"expected label name at offset {pos}")
        name = name_match.group()
        pos = name_match.end()

        if line[pos:pos + 2] != '="':
            raise MalformedRowError(f"expected '=\"' after label '{name}'")
        value, pos = _read_quoted(line, pos + 2)

        if name in labels:
            raise MalformedRowError(f"duplicate label '{name}'")
        labels[name] = value

        pos = _skip_spaces(line, pos)
        separator = line[pos:pos + 1]
        if separator == ",":
            pos += 1
        elif separator != "}":
            raise MalformedRowError(f"unexpected '{separator}' in label set")


def is_data_row(line: str) -> bool:
    """A data row is any non-blank row whose label body is not empty."""
    stripped = line.strip()
    return bool(stripped) and not stripped.startswith(EMPTY_BODY)


def parse_row(line: str, components: tuple[str, ...]) -> EntityKey | None:
    """
    Turn one response row into an entity key.

    Args:
        line: One row of the response
        components: Label names, in the order the key should use

    Returns:
        The key, or None for blank rows and empty ``{}`` bodies

    Raises:
        MalformedRowError: If the row is malformed, truncated or lacks a component
    """
    if not is_data_row(line):
        return None

    stripped = line.strip()
    labels, pos = parse_labels(stripped)

    rest = stripped[pos:].strip()
    if not rest.startswith("=>"):
        raise MalformedRowError("missing '=>' after label set")
    value = rest[2:].strip().split(" @", 1)[0].strip()
    try:
        float(value)
    except ValueError:
        raise MalformedRowError(f"invalid sample value '{value}'")

    missing = [name for name in components if name not in labels]
    if missing:
        raise MalformedRowError(f"missing components {missing}")

    return tuple(labels[name] for name in components)


def parse_response(
    text: str,
    components: Iterable[str],
    logger: FilteringBoundLogger | None = None,
) -> ParsedSample:
    """
    Parse a whole response into a sample set.

    Malformed rows are skipped and counted; they still count as data rows
    because the backend did return something for this step.
    """
    components = tuple(components)
    if not components:
        raise ValueError("at least one component is required")
    log = logger or structlog.get_logger(__name__)

    keys: set[EntityKey] = set()
    data_rows = 0
    skipped_rows = 0

    for line in text.splitlines():
        if not is_data_row(line):
            continue
        data_rows += 1
        try:
            key = parse_row(line, components)
        except MalformedRowError as e:
            skipped_rows += 1
            log.debug("sample.row_skipped", reason=str(e), row=line[:200])
            continue
        if key is not None:
            keys.add(key)

    return ParsedSample(keys=frozenset(keys), data_rows=data_rows, skipped_rows=skipped_rows)
