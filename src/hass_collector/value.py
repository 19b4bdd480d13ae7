"""Normalization of Home Assistant state strings into numeric values."""

import math
import re


_FLOAT_RE = re.compile(r"[+-]?([0-9]+\.?[0-9]*|\.[0-9]+)([eE][+-]?[0-9]+)?")
_INT_RE = re.compile(r"[+-]?[0-9]+")

_BOOLEANS = {"true": 1.0, "false": 0.0}
_SWITCH_TOKENS = {"on": 1.0, "off": 0.0}


class ParseError(ValueError):
    """Raised when a state string has no numeric interpretation."""

    def __init__(self, value: str):
        super().__init__(f"Failed to parse value: {value!r}")
        self.value = value


def _parse_float(value: str) -> float:
    if not _FLOAT_RE.fullmatch(value):
        raise ValueError(value)
    return float(value)


def _parse_int(value: str) -> float:
    if not _INT_RE.fullmatch(value):
        raise ValueError(value)
    return float(int(value))


def _parse_bool(value: str) -> float:
    return _BOOLEANS[value]


def _parse_switch(value: str) -> float:
    return _SWITCH_TOKENS[value]


# Order matters: numeric forms win over boolean and on/off tokens.
_PARSERS = (_parse_float, _parse_int, _parse_bool, _parse_switch)


def parse_value(value: str) -> float:
    """
    Convert a raw state string into a finite float.

    Args:
        value: State string as reported by Home Assistant

    Returns:
        The normalized value

    Raises:
        ParseError: If no parser accepts the string or the result is not finite
    """
    for parser in _PARSERS:
        try:
            result = parser(value)
        except (ValueError, KeyError, OverflowError):
            continue

        if not math.isfinite(result):
            raise ParseError(value)
        return result

    raise ParseError(value)
