from __future__ import annotations


def strip_trailing_newline(text: str) -> str:
    # Drop exactly one trailing line terminator ("\r\n" or "\n"); nothing else.
    if text.endswith("\r\n"):
        return text[:-2]
    if text.endswith("\n"):
        return text[:-1]
    return text


def outputs_match(actual: str, expected: str) -> bool:
    return strip_trailing_newline(actual) == strip_trailing_newline(expected)


def decode_output(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")
