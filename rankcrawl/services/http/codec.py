"""HTTP/1.1 wire serialization of cached responses.

An entry is the status line, the header block and the raw (still
content-encoded) body, so a cached response decodes exactly like the original.
"""

import httpx

CRLF = b"\r\n"
HEADER_END = b"\r\n\r\n"

# Framing headers describe the original connection, not the stored body
_FRAMING_HEADERS = frozenset({b"transfer-encoding", b"content-length", b"connection"})


class ResponseDecodeError(ValueError):
    """Raised when cached bytes are not a complete serialized response."""


def dump_response(response: httpx.Response, body: bytes) -> bytes:
    reason = response.reason_phrase or ""
    lines = [f"HTTP/1.1 {response.status_code} {reason}".rstrip().encode("ascii")]
    for name, value in response.headers.raw:
        if name.lower() in _FRAMING_HEADERS:
            continue
        lines.append(name + b": " + value)
    lines.append(b"Content-Length: " + str(len(body)).encode("ascii"))
    return CRLF.join(lines) + HEADER_END + body


def load_response(data: bytes, request: httpx.Request | None = None) -> httpx.Response:
    head, sep, body = data.partition(HEADER_END)
    if not sep:
        raise ResponseDecodeError("missing end of header block")

    status_line, *header_lines = head.split(CRLF)
    parts = status_line.split(b" ", 2)
    if len(parts) < 2 or not parts[0].startswith(b"HTTP/"):
        raise ResponseDecodeError(f"malformed status line: {status_line[:80]!r}")
    try:
        status_code = int(parts[1])
    except ValueError:
        raise ResponseDecodeError(f"malformed status code: {parts[1][:10]!r}") from None
    reason = parts[2] if len(parts) == 3 else b""

    headers = []
    for line in header_lines:
        name, sep, value = line.partition(b":")
        if not sep or not name.strip():
            raise ResponseDecodeError(f"malformed header line: {line[:80]!r}")
        headers.append((name.strip(), value.strip()))

    declared = [v for k, v in headers if k.lower() == b"content-length"]
    if declared and declared[-1] != str(len(body)).encode("ascii"):
        raise ResponseDecodeError("truncated body")

    return httpx.Response(
        status_code,
        headers=headers,
        stream=httpx.ByteStream(body),
        request=request,
        extensions={"http_version": parts[0], "reason_phrase": reason},
    )
