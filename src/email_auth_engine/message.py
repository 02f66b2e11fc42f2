import re
from email.header import decode_header, make_header
from email.utils import getaddresses, parseaddr
from typing import List, Optional, Tuple

from .errors import ProtocolError

Header = Tuple[bytes, bytes]

_NEWLINE_RE = re.compile(rb"\r?\n")
_FIELD_NAME_RE = re.compile(rb"([\x21-\x39\x3b-\x7e]+[ \t]*):")


def to_crlf(message: bytes) -> bytes:
    return _NEWLINE_RE.sub(b"\r\n", message)


def split_message(message: bytes) -> Tuple[List[Header], bytes]:
    """Split a raw message into [(name, value)] and body.

    Values keep their folding and trailing CRLF; line endings are
    normalized to CRLF. An mbox "From " line is skipped.
    """
    headers: List[List[bytes]] = []
    lines = _NEWLINE_RE.split(message)
    i = 0
    while i < len(lines):
        line = lines[i]
        if not line:
            i += 1
            break
        if line[:1] in (b" ", b"\t"):
            if not headers:
                raise ProtocolError("message starts with a continuation line")
            headers[-1][1] += line + b"\r\n"
        else:
            m = _FIELD_NAME_RE.match(line)
            if m is not None:
                headers.append([m.group(1), line[m.end():] + b"\r\n"])
            elif i == 0 and line.startswith(b"From "):
                pass
            else:
                raise ProtocolError(f"unexpected characters in header: {line[:40]!r}")
        i += 1
    return [(name, value) for name, value in headers], b"\r\n".join(lines[i:])


def header_values(headers: List[Header], name: str) -> List[str]:
    wanted = name.lower().encode()
    return [
        value.decode("utf-8", errors="replace").strip()
        for key, value in headers if key.strip().lower() == wanted
    ]


def first_header(headers: List[Header], name: str) -> Optional[str]:
    values = header_values(headers, name)
    return values[0] if values else None


def _unfold(value: str) -> str:
    value = re.sub(r"\r?\n[ \t]+", " ", value)
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeError, LookupError, ValueError):
        return value


def address_domain(value: Optional[str]) -> Optional[str]:
    """Domain part of the (first) address in a header value."""
    if not value:
        return None
    _, addr = parseaddr(_unfold(value))
    if "@" not in addr:
        return None
    domain = addr.rsplit("@", 1)[1].strip().strip(">").lower().rstrip(".")
    return domain or None


def author_domains(headers: List[Header]) -> List[str]:
    """All distinct domains named in From headers."""
    domains: List[str] = []
    for _, addr in getaddresses([_unfold(v) for v in header_values(headers, "From")]):
        if "@" in addr:
            domain = addr.rsplit("@", 1)[1].lower().rstrip(".")
            if domain and domain not in domains:
                domains.append(domain)
    return domains
