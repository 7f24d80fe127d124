"""SIP Digest authentication (RFC 2617, with RFC 2069 fallback).

Parses ``WWW-Authenticate``/``Proxy-Authenticate`` challenges, computes the
Digest response and serializes ``Authorization`` header values.  Only the MD5
algorithm and the ``auth`` quality of protection are supported.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import re
import secrets
from collections.abc import Callable

logger = logging.getLogger(__name__)

CLIENT_NONCE_BYTES = 10


class DigestError(Exception):
    """A challenge that cannot be answered."""


class FormatError(DigestError):
    """The challenge header does not follow the Digest grammar."""


class UnsupportedAlgorithm(DigestError):
    """The challenge demands a hash scheme or qop that is not implemented."""


class RandomnessFailure(RuntimeError):
    """The operating system entropy source is unavailable."""


@dataclasses.dataclass(frozen=True)
class ChallengeParameters:
    """Fields of one server challenge; absent fields are empty strings."""

    realm: str = ""
    nonce: str = ""
    opaque: str = ""
    qop: str = ""
    algorithm: str = ""
    domain: str = ""


@dataclasses.dataclass(frozen=True)
class AuthorizationCredentials:
    """Client side of one authenticated request.

    The response binds method, uri and nonce together, so a value is only
    valid for the request it was computed for.
    """

    username: str
    uri: str
    method: str
    nonce_count: int = 1
    client_nonce: str = ""
    response: str = ""

    @property
    def nc(self) -> str:
        # RFC 2617 §3.2.2: nc-value is exactly 8 LHEX
        return f"{self.nonce_count:08x}"


_CHALLENGE_FIELDS = frozenset(f.name for f in dataclasses.fields(ChallengeParameters))

_SCHEME_RE = re.compile(r"\s*digest\s+(.*?)\s*$", re.IGNORECASE | re.DOTALL)
# RFC 2617 §1.2: auth-param = token "=" ( token | quoted-string )
_PARAM_RE = re.compile(
    r'\s*([A-Za-z0-9_.-]+)\s*=\s*("(?:[^"\\]|\\.)*"|[^\s,"]+)\s*(,|$)', re.DOTALL
)
_ESCAPE_RE = re.compile(r"\\(.)", re.DOTALL)


def parse_challenge(header_value: str) -> ChallengeParameters:
    """Parse a ``Digest k1=v1,k2="v2",...`` challenge.

    Raises:
        FormatError: the value is not a Digest challenge or a parameter is
            malformed.
    """
    match = _SCHEME_RE.fullmatch(header_value)
    if match is None:
        raise FormatError(f"Not a Digest challenge: {header_value!r}")
    params = match.group(1)
    if not params:
        raise FormatError(f"Digest challenge has no parameters: {header_value!r}")

    values: dict[str, str] = {}
    pos = 0
    while pos < len(params):
        param = _PARAM_RE.match(params, pos)
        if param is None or param.end() == pos:
            raise FormatError(f"Malformed Digest parameter at {params[pos:]!r}")
        key = param.group(1).lower()
        value = param.group(2)
        if value.startswith('"'):
            value = _ESCAPE_RE.sub(r"\1", value[1:-1])
        if key in _CHALLENGE_FIELDS:
            values[key] = value
        else:
            logger.warning("Ignoring Digest parameter %r", key)
        pos = param.end()
        if param.group(3) == "" and pos < len(params):
            raise FormatError(f"Malformed Digest parameter at {params[pos:]!r}")
    return ChallengeParameters(**values)


def select_qop(offered: str) -> str:
    """Pick the qop to answer with from the server's option list.

    Returns ``""`` when the server offered none (RFC 2069 mode).
    """
    if not offered:
        return ""
    options = [option.strip().lower() for option in offered.split(",")]
    if "auth" in options:
        return "auth"
    raise UnsupportedAlgorithm(f"Unsupported qop {offered!r}")


def _md5(data: str) -> str:
    return hashlib.md5(data.encode("utf-8")).hexdigest()


def compute_response(
    credentials: AuthorizationCredentials,
    password: str,
    challenge: ChallengeParameters,
) -> str:
    """Compute the Digest ``response`` value for *credentials*.

    Raises:
        UnsupportedAlgorithm: the challenge names an algorithm other than MD5.
    """
    if challenge.algorithm and challenge.algorithm.upper() != "MD5":
        raise UnsupportedAlgorithm(f"Unsupported algorithm {challenge.algorithm!r}")
    qop = select_qop(challenge.qop)
    ha1 = _md5(f"{credentials.username}:{challenge.realm}:{password}")
    ha2 = _md5(f"{credentials.method}:{credentials.uri}")
    if not qop:
        # RFC 2069 compatibility
        return _md5(f"{ha1}:{challenge.nonce}:{ha2}")
    return _md5(
        f"{ha1}:{challenge.nonce}:{credentials.nc}:{credentials.client_nonce}"
        f":{qop}:{ha2}"
    )


def generate_client_nonce() -> str:
    """Return 10 cryptographically random bytes as 20 hex characters."""
    try:
        return secrets.token_bytes(CLIENT_NONCE_BYTES).hex()
    except (OSError, NotImplementedError) as exc:
        raise RandomnessFailure("Could not read random bytes") from exc


def authorize(
    challenge: ChallengeParameters,
    *,
    username: str,
    password: str,
    uri: str,
    method: str,
    nonce_count: int = 1,
) -> AuthorizationCredentials:
    """Build fresh credentials answering *challenge* for one request."""
    credentials = AuthorizationCredentials(
        username=username,
        uri=uri,
        method=method,
        nonce_count=nonce_count,
        client_nonce=generate_client_nonce(),
    )
    response = compute_response(credentials, password, challenge)
    return dataclasses.replace(credentials, response=response)


_Accessor = Callable[[AuthorizationCredentials, ChallengeParameters, str], str]

# (name, quoted, accessor); the accessor receives the selected qop.
# RFC 2617 §3.2.2: cnonce and nc MUST NOT be sent without qop.
_HEADER_FIELDS: tuple[tuple[str, bool, _Accessor], ...] = (
    ("username", True, lambda c, ch, qop: c.username),
    ("realm", True, lambda c, ch, qop: ch.realm),
    ("nonce", True, lambda c, ch, qop: ch.nonce),
    ("uri", True, lambda c, ch, qop: c.uri),
    ("response", True, lambda c, ch, qop: c.response),
    ("cnonce", True, lambda c, ch, qop: c.client_nonce if qop else ""),
    ("nc", False, lambda c, ch, qop: c.nc if qop else ""),
    ("qop", False, lambda c, ch, qop: qop),
    ("algorithm", False, lambda c, ch, qop: ch.algorithm),
    ("opaque", True, lambda c, ch, qop: ch.opaque),
)


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def build_authorization_header(
    credentials: AuthorizationCredentials,
    challenge: ChallengeParameters,
) -> str:
    """Serialize an ``Authorization``/``Proxy-Authorization`` header value."""
    qop = select_qop(challenge.qop)
    pairs = []
    for name, quoted, accessor in _HEADER_FIELDS:
        value = accessor(credentials, challenge, qop)
        if not value:
            continue
        pairs.append(f"{name}={_quote(value) if quoted else value}")
    return "Digest " + ",".join(pairs)
