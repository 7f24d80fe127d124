"""SIP message model, parser and request/response factories."""

from __future__ import annotations

import dataclasses
import random
import secrets
import string
import uuid

# RFC 3261 §7.3.3: implementations MUST accept
# both long and short forms of each header name (§20 defines the mappings)
_COMPACT_HEADERS = {
    "v": "Via",
    "f": "From",
    "t": "To",
    "i": "Call-ID",
    "m": "Contact",
    "l": "Content-Length",
    "c": "Content-Type",
}

_AUTH_HEADERS = ("Authorization", "Proxy-Authorization")

_REASON_PHRASES = {
    100: "Trying",
    180: "Ringing",
    181: "Call Is Being Forwarded",
    182: "Queued",
    183: "Session Progress",
    200: "OK",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    407: "Proxy Authentication Required",
    408: "Request Timeout",
    480: "Temporarily Unavailable",
    481: "Call/Transaction Does Not Exist",
    486: "Busy Here",
    487: "Request Terminated",
    500: "Server Internal Error",
    503: "Service Unavailable",
    603: "Decline",
}


def reason_phrase(status: int) -> str:
    """Return the RFC 3261 §21 reason phrase for *status*."""
    return _REASON_PHRASES.get(status, "Unknown")


@dataclasses.dataclass
class SipMessage:
    """Parsed SIP request or response.

    Requests carry ``method`` and ``uri``; responses carry ``status`` and
    ``reason`` and leave ``method``/``uri`` empty.
    """

    method: str
    uri: str
    version: str
    headers: list[tuple[str, str]]
    body: str
    status: int = 0
    reason: str = ""

    @property
    def is_response(self) -> bool:
        return self.status != 0

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup (returns first match).

        RFC 3261 §7.3.1: header field names are always case-insensitive.
        """
        lower = name.lower()
        for key, value in self.headers:
            if key.lower() == lower:
                return value
        return None

    def set_header(self, name: str, value: str) -> None:
        """Replace the first header called *name*, or append it."""
        lower = name.lower()
        for i, (key, _value) in enumerate(self.headers):
            if key.lower() == lower:
                self.headers[i] = (key, value)
                return
        self.headers.append((name, value))

    def remove_header(self, name: str) -> None:
        lower = name.lower()
        self.headers = [(k, v) for k, v in self.headers if k.lower() != lower]

    @property
    def cseq(self) -> int:
        """Sequence number of the CSeq header (RFC 3261 §20.16), 0 if absent."""
        value = self.header("CSeq")
        if not value:
            return 0
        try:
            return int(value.split()[0])
        except ValueError:
            return 0

    @property
    def cseq_method(self) -> str:
        value = self.header("CSeq") or ""
        parts = value.split()
        return parts[1].upper() if len(parts) > 1 else ""

    def copy(self) -> SipMessage:
        return dataclasses.replace(self, headers=list(self.headers))

    def encode(self) -> bytes:
        """Serialize to wire format with a freshly computed Content-Length."""
        if self.is_response:
            # RFC 3261 §7.2: Status-Line = SIP-Version SP Status-Code SP Reason
            lines = [f"{self.version} {self.status} {self.reason}"]
        else:
            # RFC 3261 §7.1: Request-Line = Method SP Request-URI SP SIP-Version
            lines = [f"{self.method} {self.uri} {self.version}"]
        for name, value in self.headers:
            if name.lower() == "content-length":
                continue
            lines.append(f"{name}: {value}")
        return _encode_message(lines, self.body)


def parse_message(data: bytes) -> SipMessage:
    """Parse a SIP message (request or response) from raw bytes."""
    # RFC 3261 §7: SIP is UTF-8 text; messages use CRLF line endings
    text = data.decode("utf-8", errors="replace")
    # RFC 3261 §7: empty line (CRLF CRLF) separates headers from body
    head, _, body = text.partition("\r\n\r\n")
    lines = head.split("\r\n")

    start_line = lines[0]
    method = uri = reason = ""
    status = 0
    if start_line.startswith("SIP/"):
        # RFC 3261 §7.2: Status-Line = SIP-Version SP Status-Code SP Reason
        parts = start_line.split(" ", 2)
        if len(parts) < 2 or not parts[1].isdigit():
            raise ValueError(f"Malformed status line: {start_line!r}")
        version = parts[0]
        status = int(parts[1])
        reason = parts[2] if len(parts) > 2 else ""
    else:
        # RFC 3261 §7.1: Request-Line = Method SP Request-URI SP SIP-Version
        parts = start_line.split(" ", 2)
        method = parts[0]
        uri = parts[1] if len(parts) > 1 else ""
        version = parts[2] if len(parts) > 2 else "SIP/2.0"

    headers: list[tuple[str, str]] = []
    for line in lines[1:]:
        if ":" in line:
            key, _, value = line.partition(":")
            key = key.strip()
            # RFC 3261 §7.3.3: expand compact header forms to canonical names
            key = _COMPACT_HEADERS.get(key, key)
            headers.append((key, value.strip()))

    return SipMessage(
        method=method,
        uri=uri,
        version=version,
        headers=headers,
        body=body,
        status=status,
        reason=reason,
    )


def _encode_message(lines: list[str], body: str) -> bytes:
    """Encode header lines + body into a complete SIP message."""
    body_bytes = body.encode("utf-8") if body else b""
    # RFC 3261 §7.4.2: Content-Length provides the body length in bytes
    lines.append(f"Content-Length: {len(body_bytes)}")
    # RFC 3261 §7: each line MUST be terminated by CRLF; the empty line
    # separating headers from body MUST be present even if body is empty
    lines.append("")
    msg_bytes = ("\r\n".join(lines) + "\r\n").encode("utf-8")
    if body_bytes:
        msg_bytes += body_bytes
    return msg_bytes


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def new_request(
    method: str,
    uri: str,
    *,
    from_uri: str,
    to_uri: str,
    contact: str,
    local_addr: tuple[str, int],
    cseq: int,
    extra_headers: list[tuple[str, str]] | None = None,
    body: str = "",
    content_type: str = "application/sdp",
) -> SipMessage:
    """Build a dialog-initiating request with a fresh Call-ID, tag and branch.

    Parameters:
        method: SIP method (e.g. "REGISTER", "INVITE")
        uri: Request-URI
        from_uri: address-of-record placed in From
        to_uri: target placed in To
        contact: URI where the remote side reaches us
        local_addr: (host, port) advertised in the Via sent-by
        cseq: CSeq sequence number
    """
    host, port = local_addr
    headers = [
        # RFC 3581 §3: an empty rport asks the server to answer to the
        # observed source port
        ("Via", f"SIP/2.0/UDP {host}:{port};rport;branch={generate_branch()}"),
        # RFC 3261 §8.1.1.6: Max-Forwards SHOULD start at 70
        ("Max-Forwards", "70"),
        # RFC 3261 §8.1.1.3: From MUST carry a new tag
        ("From", f"<{from_uri}>;tag={generate_tag()}"),
        ("To", f"<{to_uri}>"),
        ("Call-ID", generate_call_id(host)),
        ("CSeq", f"{cseq} {method}"),
        ("Contact", f"<{contact}>"),
    ]
    if extra_headers:
        headers.extend(extra_headers)
    if body:
        # RFC 3261 §7.4.1: Content-Type MUST indicate the media type of the body
        headers.append(("Content-Type", content_type))
    return SipMessage(
        method=method,
        uri=uri,
        version="SIP/2.0",
        headers=headers,
        body=body,
    )


def renew_request(request: SipMessage, cseq: int) -> SipMessage:
    """Copy *request* as a new transaction on the same dialog.

    RFC 3261 §8.1.3.5 / §22.2: a request resubmitted with credentials keeps
    Call-ID, To and From but MUST carry an incremented CSeq and a new Via
    branch.  Credentials from the previous attempt are dropped.
    """
    renewed = request.copy()
    renewed.set_header("CSeq", f"{cseq} {request.method}")
    via = request.header("Via")
    if via is not None:
        renewed.set_header("Via", _replace_branch(via, generate_branch()))
    for name in _AUTH_HEADERS:
        renewed.remove_header(name)
    return renewed


def new_ack(response: SipMessage, request: SipMessage) -> SipMessage:
    """Build the ACK for a final *response* to an INVITE *request*.

    RFC 3261 §17.1.1.3: the ACK for a non-2xx response reuses the
    Request-URI, Call-ID, From and top Via of the INVITE, takes To from the
    response (with its tag), and keeps the CSeq number with method ACK.
    RFC 3261 §13.2.2.4: the ACK for a 2xx is a new transaction sent to the
    remote Contact with a fresh branch.
    """
    uri = request.uri
    via = request.header("Via") or ""
    if 200 <= response.status < 300:
        contact = response.header("Contact")
        if contact:
            uri = contact_uri(contact)
        via = _replace_branch(via, generate_branch())
    headers = [
        ("Via", via),
        ("Max-Forwards", "70"),
        ("From", request.header("From") or ""),
        ("To", response.header("To") or request.header("To") or ""),
        ("Call-ID", request.header("Call-ID") or ""),
        ("CSeq", f"{request.cseq} ACK"),
    ]
    return SipMessage(method="ACK", uri=uri, version="SIP/2.0", headers=headers, body="")


def new_cancel(request: SipMessage) -> SipMessage:
    """Build a CANCEL for a pending *request*.

    RFC 3261 §9.1: Request-URI, Call-ID, To, From and the CSeq number MUST
    equal the cancelled request; the single Via MUST match its top Via so
    the CANCEL lands on the same server transaction.
    """
    headers = [
        ("Via", request.header("Via") or ""),
        ("Max-Forwards", "70"),
        ("From", request.header("From") or ""),
        ("To", request.header("To") or ""),
        ("Call-ID", request.header("Call-ID") or ""),
        ("CSeq", f"{request.cseq} CANCEL"),
    ]
    return SipMessage(
        method="CANCEL", uri=request.uri, version="SIP/2.0", headers=headers, body=""
    )


def new_response(
    request: SipMessage,
    status_code: int,
    reason: str | None = None,
    *,
    to_tag: str | None = None,
    extra_headers: list[tuple[str, str]] | None = None,
) -> SipMessage:
    """Build a SIP response mirroring key headers from the request."""
    headers: list[tuple[str, str]] = []

    # RFC 3261 §8.2.6.2: Via header field values in the response MUST equal
    # those in the request and MUST maintain the same ordering
    for key, value in request.headers:
        if key.lower() == "via":
            headers.append(("Via", value))

    # RFC 3261 §8.2.6.2: From, Call-ID, and CSeq in response MUST equal
    # the corresponding fields from the request
    for hdr in ("From", "Call-ID", "CSeq"):
        value = request.header(hdr)
        if value is not None:
            headers.append((hdr, value))

    # RFC 3261 §8.2.6.2: if the request To has no tag, the UAS MUST add one;
    # if a tag was already present, the To header MUST be echoed unchanged
    to_value = request.header("To")
    if to_value is not None:
        if to_tag is not None and ";tag=" not in to_value:
            to_value = f"{to_value};tag={to_tag}"
        headers.append(("To", to_value))

    if extra_headers:
        headers.extend(extra_headers)

    return SipMessage(
        method="",
        uri="",
        version="SIP/2.0",
        headers=headers,
        body="",
        status=status_code,
        reason=reason if reason is not None else reason_phrase(status_code),
    )


# ---------------------------------------------------------------------------
# SIP header/parameter utilities
# ---------------------------------------------------------------------------

_TAG_CHARS = string.ascii_lowercase + string.digits


def generate_tag() -> str:
    """Generate a random SIP tag value.

    RFC 3261 §19.3: tags MUST be globally unique and cryptographically random
    with at least 32 bits of randomness.
    """
    return "".join(secrets.choice(_TAG_CHARS) for _ in range(8))


def generate_branch() -> str:
    """Generate a random Via branch parameter.

    RFC 3261 §8.1.1.7: the branch parameter MUST be unique across space and
    time for all requests.  It MUST begin with the magic cookie "z9hG4bK" so
    receivers can identify RFC 3261-compliant transaction IDs (§17.1.3).
    """
    return "z9hG4bK" + "".join(secrets.choice(_TAG_CHARS) for _ in range(8))


def generate_call_id(host: str) -> str:
    """RFC 3261 §8.1.1.4: Call-ID MUST be unique over space and time."""
    return f"{uuid.uuid4().hex}@{host}"


def generate_cseq() -> int:
    """Random initial CSeq (RFC 3261 §8.1.1.5: MUST be less than 2**31)."""
    return random.randint(1, 2**16)


def parse_via_params(via: str) -> dict[str, str]:
    """Parse Via header semicolon-delimited parameters into a dict.

    Parameters without values (e.g. bare ``rport``) get empty string values.
    The first segment (protocol/sent-by) is excluded.
    """
    params: dict[str, str] = {}
    for part in via.split(";")[1:]:
        part = part.strip()
        if "=" in part:
            key, _, value = part.partition("=")
            params[key.strip()] = value.strip()
        else:
            params[part] = ""
    return params


def extract_branch(msg: SipMessage) -> str | None:
    """Extract the Via branch parameter for transaction matching.

    RFC 3261 §17.1.3: the branch in the topmost Via identifies the client
    transaction; a response is matched to its transaction by comparing this
    value along with the CSeq method.
    """
    via = msg.header("Via")
    if via is None:
        return None
    return parse_via_params(via).get("branch")


def contact_uri(value: str) -> str:
    """Extract the URI from a name-addr, ignoring header parameters."""
    if "<" in value and ">" in value:
        return value[value.index("<") + 1 : value.index(">")]
    return value.split(";")[0].strip()


def _replace_branch(via: str, branch: str) -> str:
    parts = [p for p in via.split(";") if not p.strip().startswith("branch=")]
    parts.append(f"branch={branch}")
    return ";".join(parts)
