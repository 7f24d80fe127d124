import hashlib
import logging
import secrets

import pytest

from http2sip.sip import auth
from http2sip.sip.auth import (
    AuthorizationCredentials,
    ChallengeParameters,
    FormatError,
    RandomnessFailure,
    UnsupportedAlgorithm,
    authorize,
    build_authorization_header,
    compute_response,
    generate_client_nonce,
    parse_challenge,
    select_qop,
)

# RFC 2617 §3.5 worked example
RFC_CHALLENGE = ChallengeParameters(
    realm="testrealm@host.com",
    nonce="dcd98b7102dd2f0e8b11d0f600bfb0c093",
    opaque="5ccc069c403ebaf9f0171e9517f40e41",
    qop="auth,auth-int",
)
RFC_CREDENTIALS = AuthorizationCredentials(
    username="Mufasa",
    uri="/dir/index.html",
    method="GET",
    nonce_count=1,
    client_nonce="0a4f113b",
)


def _md5(value: str) -> str:
    return hashlib.md5(value.encode()).hexdigest()


# ---------------------------------------------------------------------------
# compute_response
# ---------------------------------------------------------------------------


def test_rfc2617_example():
    response = compute_response(RFC_CREDENTIALS, "Circle Of Life", RFC_CHALLENGE)
    assert response == "6629fae49393a05397450978507c4ef1"


def test_legacy_formula_without_qop():
    challenge = ChallengeParameters(realm="asterisk", nonce="4a5b6c")
    creds = AuthorizationCredentials(
        username="1000", uri="sip:sip.example.com", method="REGISTER"
    )
    ha1 = _md5("1000:asterisk:secret")
    ha2 = _md5("REGISTER:sip:sip.example.com")
    assert compute_response(creds, "secret", challenge) == _md5(f"{ha1}:4a5b6c:{ha2}")


def test_legacy_formula_ignores_nc_and_cnonce():
    challenge = ChallengeParameters(realm="asterisk", nonce="4a5b6c")
    first = AuthorizationCredentials("1000", "sip:x", "INVITE", 1, "aaaa")
    second = AuthorizationCredentials("1000", "sip:x", "INVITE", 7, "bbbb")
    assert compute_response(first, "pw", challenge) == compute_response(
        second, "pw", challenge
    )


def test_response_depends_on_nonce_count_and_client_nonce():
    base = compute_response(RFC_CREDENTIALS, "Circle Of Life", RFC_CHALLENGE)
    bumped = AuthorizationCredentials("Mufasa", "/dir/index.html", "GET", 2, "0a4f113b")
    other_cnonce = AuthorizationCredentials(
        "Mufasa", "/dir/index.html", "GET", 1, "0a4f113c"
    )
    assert compute_response(bumped, "Circle Of Life", RFC_CHALLENGE) != base
    assert compute_response(other_cnonce, "Circle Of Life", RFC_CHALLENGE) != base


def test_response_depends_on_method():
    post = AuthorizationCredentials("Mufasa", "/dir/index.html", "POST", 1, "0a4f113b")
    assert compute_response(post, "Circle Of Life", RFC_CHALLENGE) != (
        "6629fae49393a05397450978507c4ef1"
    )


def test_algorithm_md5_any_case():
    challenge = ChallengeParameters(realm="r", nonce="n", algorithm="md5")
    creds = AuthorizationCredentials("u", "sip:x", "INVITE")
    assert compute_response(creds, "p", challenge) == compute_response(
        creds, "p", ChallengeParameters(realm="r", nonce="n")
    )


def test_unsupported_algorithm():
    challenge = ChallengeParameters(realm="r", nonce="n", algorithm="SHA-256")
    creds = AuthorizationCredentials("u", "sip:x", "INVITE")
    with pytest.raises(UnsupportedAlgorithm):
        compute_response(creds, "p", challenge)


def test_nc_is_eight_hex_digits():
    assert AuthorizationCredentials("u", "x", "GET", 1).nc == "00000001"
    assert AuthorizationCredentials("u", "x", "GET", 255).nc == "000000ff"


# ---------------------------------------------------------------------------
# select_qop
# ---------------------------------------------------------------------------


def test_select_qop():
    assert select_qop("") == ""
    assert select_qop("auth") == "auth"
    assert select_qop("auth-int, auth") == "auth"
    assert select_qop("AUTH") == "auth"
    with pytest.raises(UnsupportedAlgorithm):
        select_qop("auth-int")


# ---------------------------------------------------------------------------
# parse_challenge
# ---------------------------------------------------------------------------


def test_parse_typical_asterisk_challenge():
    challenge = parse_challenge(
        'Digest algorithm=MD5, realm="asterisk", nonce="1f2e3d4c"'
    )
    assert challenge == ChallengeParameters(
        realm="asterisk", nonce="1f2e3d4c", algorithm="MD5"
    )


def test_parse_all_fields():
    challenge = parse_challenge(
        'Digest realm="example.com",domain="sip:example.com",'
        'nonce="abc",opaque="xyz",qop="auth,auth-int",algorithm=MD5'
    )
    assert challenge.realm == "example.com"
    assert challenge.domain == "sip:example.com"
    assert challenge.nonce == "abc"
    assert challenge.opaque == "xyz"
    assert challenge.qop == "auth,auth-int"
    assert challenge.algorithm == "MD5"


def test_parse_scheme_case_insensitive():
    assert parse_challenge('DIGEST nonce="n"').nonce == "n"
    assert parse_challenge('digest nonce="n"').nonce == "n"


def test_parse_keys_case_insensitive():
    assert parse_challenge('Digest Realm="r", NONCE="n"').realm == "r"


def test_parse_quoted_escapes_and_commas():
    challenge = parse_challenge(
        'Digest realm="a \\"quoted\\" realm, with comma", nonce="n\\\\1"'
    )
    assert challenge.realm == 'a "quoted" realm, with comma'
    assert challenge.nonce == "n\\1"


def test_parse_missing_nonce_is_empty():
    assert parse_challenge('Digest realm="r"').nonce == ""


def test_parse_unknown_key_warns(caplog):
    with caplog.at_level(logging.WARNING, logger="http2sip.sip.auth"):
        challenge = parse_challenge('Digest realm="r", stale=FALSE, nonce="n"')
    assert challenge.nonce == "n"
    assert "stale" in caplog.text


@pytest.mark.parametrize(
    "value",
    [
        "",
        "Basic realm=x",
        "Digest",
        "Digest   ",
        'Digest realm="unterminated',
        "Digest realm",
        'Digest realm="r" nonce="n"',
        'Digest realm="r",,nonce="n"',
    ],
)
def test_parse_malformed(value):
    with pytest.raises(FormatError):
        parse_challenge(value)


# ---------------------------------------------------------------------------
# Authorization header
# ---------------------------------------------------------------------------


def test_header_field_order_and_quoting():
    creds = AuthorizationCredentials(
        username="Mufasa",
        uri="/dir/index.html",
        method="GET",
        nonce_count=1,
        client_nonce="0a4f113b",
        response="6629fae49393a05397450978507c4ef1",
    )
    challenge = ChallengeParameters(
        realm="testrealm@host.com",
        nonce="dcd98b7102dd2f0e8b11d0f600bfb0c093",
        opaque="5ccc069c403ebaf9f0171e9517f40e41",
        qop="auth",
        algorithm="MD5",
    )
    assert build_authorization_header(creds, challenge) == (
        'Digest username="Mufasa",realm="testrealm@host.com",'
        'nonce="dcd98b7102dd2f0e8b11d0f600bfb0c093",uri="/dir/index.html",'
        'response="6629fae49393a05397450978507c4ef1",cnonce="0a4f113b",'
        "nc=00000001,qop=auth,algorithm=MD5,"
        'opaque="5ccc069c403ebaf9f0171e9517f40e41"'
    )


def test_legacy_header_omits_cnonce_and_nc():
    creds = AuthorizationCredentials(
        "1000", "sip:sip.example.com", "REGISTER", 1, "abcdef", "f00d"
    )
    header = build_authorization_header(
        creds, ChallengeParameters(realm="asterisk", nonce="n1")
    )
    assert header == (
        'Digest username="1000",realm="asterisk",nonce="n1",'
        'uri="sip:sip.example.com",response="f00d"'
    )


def test_header_escapes_quotes():
    creds = AuthorizationCredentials('we"ird', "sip:x", "INVITE", response="r")
    header = build_authorization_header(
        creds, ChallengeParameters(realm="r", nonce="n")
    )
    assert 'username="we\\"ird"' in header


def test_header_parses_back():
    challenge = parse_challenge(
        'Digest realm="example.com",nonce="abc123",qop="auth",algorithm=MD5'
    )
    creds = authorize(
        challenge,
        username="1000",
        password="secret",
        uri="sip:777@sip.example.com",
        method="INVITE",
        nonce_count=3,
    )
    header = build_authorization_header(creds, challenge)
    # the server side recomputes the response from what we sent
    fields = dict(
        part.split("=", 1) for part in header.removeprefix("Digest ").split(",")
    )
    fields = {k: v.strip('"') for k, v in fields.items()}
    assert fields["nc"] == "00000003"
    assert fields["qop"] == "auth"
    assert fields["cnonce"] == creds.client_nonce
    ha1 = _md5("1000:example.com:secret")
    ha2 = _md5("INVITE:sip:777@sip.example.com")
    expected = _md5(f"{ha1}:abc123:00000003:{fields['cnonce']}:auth:{ha2}")
    assert fields["response"] == expected


# ---------------------------------------------------------------------------
# Randomness
# ---------------------------------------------------------------------------


def test_client_nonce_format():
    nonce = generate_client_nonce()
    assert len(nonce) == 20
    int(nonce, 16)
    assert generate_client_nonce() != nonce


def test_authorize_uses_fresh_client_nonce():
    challenge = ChallengeParameters(realm="r", nonce="n", qop="auth")
    first = authorize(challenge, username="u", password="p", uri="sip:x", method="M")
    second = authorize(challenge, username="u", password="p", uri="sip:x", method="M")
    assert first.client_nonce != second.client_nonce
    assert first.response != second.response


def test_randomness_failure(monkeypatch):
    def _broken(n):
        raise OSError("no entropy")

    monkeypatch.setattr(secrets, "token_bytes", _broken)
    with pytest.raises(RandomnessFailure):
        auth.generate_client_nonce()
