import hashlib
import json
import threading
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from sigcerts.fulcio import (
    CertificateRequest,
    CertificateResponse,
    Client,
    FulcioError,
    IDToken,
    OIDCOptions,
    PublicKeyInfo,
    key_algorithm,
)

EMAIL = "foo@example.com"


class FakeSigner:
    pass


def _cert(cn, key, issuer_cn, issuer_key):
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn)]))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(minutes=10))
        .sign(issuer_key, hashes.SHA256())
    )


@pytest.mark.parametrize(
    "signer, want",
    [
        (ec.generate_private_key(ec.SECP256R1()), "ecdsa"),
        (rsa.generate_private_key(public_exponent=65537, key_size=2048), "rsa"),
        (FakeSigner(), "test_fulcio"),
        (None, ""),
    ],
)
def test_key_algorithm(signer, want):
    assert key_algorithm(signer) == want


def _fake_fulcio(key, email):
    def signing_cert(cr: CertificateRequest, id_token: str) -> CertificateResponse:
        if cr.public_key.algorithm != key_algorithm(key):
            raise FulcioError(f"want algorithm {key_algorithm(key)}, got {cr.public_key.algorithm}")
        want = PublicKeyInfo(
            algorithm=key_algorithm(key),
            content=key.public_key().public_bytes(
                serialization.Encoding.DER,
                serialization.PublicFormat.SubjectPublicKeyInfo,
            ),
        )
        if want != cr.public_key:
            raise FulcioError("public key mismatch")
        try:
            key.public_key().verify(
                cr.signed_email_address, email.encode(), ec.ECDSA(hashes.SHA256())
            )
        except InvalidSignature as exc:
            raise FulcioError("signed email did not match") from exc
        return CertificateResponse()

    return signing_cert


def test_get_cert():
    key = ec.generate_private_key(ec.SECP256R1())
    client = Client(
        "https://fulcio.example.com",
        OIDCOptions(
            issuer="https://oauth.example.com",
            token_getter=lambda opts: IDToken(subject=EMAIL),
        ),
        signing_cert=_fake_fulcio(key, EMAIL),
    )
    assert client.get_cert(key) == CertificateResponse()


def test_get_cert_wrong_subject_fails():
    key = ec.generate_private_key(ec.SECP256R1())
    client = Client(
        "https://fulcio.example.com",
        OIDCOptions(token_getter=lambda opts: IDToken(subject="bar@example.com")),
        signing_cert=_fake_fulcio(key, EMAIL),
    )
    with pytest.raises(FulcioError, match="signed email did not match"):
        client.get_cert(key)


def test_get_cert_propagates_token_error():
    def failing(opts):
        raise RuntimeError("no token")

    client = Client(
        "https://fulcio.example.com",
        OIDCOptions(token_getter=failing),
        signing_cert=lambda cr, t: CertificateResponse(),
    )
    with pytest.raises(RuntimeError, match="no token"):
        client.get_cert(ec.generate_private_key(ec.SECP256R1()))


def test_get_cert_without_token_getter():
    client = Client("https://fulcio.example.com", signing_cert=lambda cr, t: CertificateResponse())
    with pytest.raises(FulcioError):
        client.get_cert(ec.generate_private_key(ec.SECP256R1()))


def test_token_getter_receives_options():
    seen = []
    opts = OIDCOptions(issuer="https://oauth.example.com", client_id="sigstore")

    def getter(o):
        seen.append(o)
        return IDToken(subject=EMAIL)

    opts.token_getter = getter
    client = Client("https://fulcio.example.com", opts, signing_cert=lambda cr, t: CertificateResponse())
    client.get_cert(ec.generate_private_key(ec.SECP256R1()))
    assert seen == [opts]


def test_invalid_url():
    with pytest.raises(ValueError):
        Client("http://example.com:notaport")


def test_from_pem_chain_without_certificate():
    with pytest.raises(FulcioError):
        CertificateResponse.from_pem_chain(b"nothing here")


def test_http_signing_cert():
    ca_key = ec.generate_private_key(ec.SECP256R1())
    leaf_key = ec.generate_private_key(ec.SECP256R1())
    root = _cert("root", ca_key, "root", ca_key)
    leaf = _cert("leaf", leaf_key, "root", ca_key)
    body = leaf.public_bytes(serialization.Encoding.PEM) + root.public_bytes(serialization.Encoding.PEM)
    captured = {}

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            captured["path"] = self.path
            captured["auth"] = self.headers.get("Authorization")
            length = int(self.headers.get("Content-Length"))
            captured["body"] = json.loads(self.rfile.read(length))
            self.send_response(201)
            self.send_header("Content-Type", "application/pem-certificate-chain")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, *args):
            pass

    server = HTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        client = Client(
            f"http://127.0.0.1:{server.server_port}/",
            OIDCOptions(token_getter=lambda o: IDToken(subject=EMAIL, raw_string="token")),
        )
        resp = client.get_cert(leaf_key)
    finally:
        server.shutdown()
        server.server_close()

    assert captured["path"] == "/api/v1/signingCert"
    assert captured["auth"] == "Bearer token"
    assert captured["body"]["publicKey"]["algorithm"] == "ecdsa"
    assert x509.load_pem_x509_certificate(resp.cert_pem) == leaf
    assert x509.load_pem_x509_certificates(resp.chain_pem) == [root]
    assert hashlib.sha256(EMAIL.encode()).digest()  # digest input is the subject