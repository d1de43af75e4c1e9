import io
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from sigcerts.fulcio import CertificateResponse, Client, FulcioError, IDToken, OIDCOptions
from sigcerts.identity import Identity, IdentityFactory

PEM = serialization.Encoding.PEM


def _cert(cn, public_key, issuer_cn, issuer_key):
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn)]))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(minutes=10))
        .sign(issuer_key, hashes.SHA256())
    )


@pytest.fixture
def ca():
    key = ec.generate_private_key(ec.SECP256R1())
    return key, _cert("root", key.public_key(), "root", key)


@pytest.fixture
def identity(ca):
    ca_key, root = ca
    key = ec.generate_private_key(ec.SECP256R1())
    leaf = _cert("leaf", key.public_key(), "root", ca_key)
    return Identity(key, leaf.public_bytes(PEM), root.public_bytes(PEM)), leaf, root


def test_certificate(identity):
    ident, leaf, _ = identity
    assert ident.certificate() == leaf


def test_certificate_chain(identity):
    ident, leaf, root = identity
    assert ident.certificate_chain() == [leaf, root]


def test_certificate_chain_without_chain(identity):
    ident, _, _ = identity
    ident.chain_pem = b""
    with pytest.raises(ValueError):
        ident.certificate_chain()


def test_public_key_matches_certificate(identity):
    ident, leaf, _ = identity
    assert ident.public_key().public_numbers() == leaf.public_key().public_numbers()


def test_public_key_requires_method():
    with pytest.raises(TypeError, match="does not implement public key method"):
        Identity(object(), b"").public_key()


def test_signer_signs_verifiably(identity):
    ident, leaf, _ = identity
    signature = ident.signer().sign(b"data", ec.ECDSA(hashes.SHA256()))
    leaf.public_key().verify(signature, b"data", ec.ECDSA(hashes.SHA256()))
    assert ident.signer() is ident.private_key


def test_signer_rejects_unknown_key():
    with pytest.raises(TypeError):
        Identity("not a key", b"").signer()


def _issuing_client(ca_key, root):
    def signing_cert(cr, id_token):
        public = serialization.load_der_public_key(cr.public_key.content)
        leaf = _cert("leaf", public, "root", ca_key)
        return CertificateResponse(leaf.public_bytes(PEM), root.public_bytes(PEM))

    return Client(
        "https://fulcio.example.com",
        OIDCOptions(token_getter=lambda o: IDToken(subject="foo@example.com")),
        signing_cert=signing_cert,
    )


def test_new_identity(ca):
    ca_key, root = ca
    ident = IdentityFactory(io.StringIO()).new_identity(_issuing_client(ca_key, root))
    assert isinstance(ident.private_key, ec.EllipticCurvePrivateKey)
    assert ident.private_key.curve.name == "secp256r1"
    assert (
        ident.certificate().public_key().public_numbers()
        == ident.public_key().public_numbers()
    )
    assert ident.certificate_chain()[1] == root


def test_new_identity_reports_error():
    def failing(cr, id_token):
        raise FulcioError("boom")

    client = Client(
        "https://fulcio.example.com",
        OIDCOptions(token_getter=lambda o: IDToken(subject="foo@example.com")),
        signing_cert=failing,
    )
    out = io.StringIO()
    with pytest.raises(FulcioError, match="boom"):
        IdentityFactory(out).new_identity(client)
    assert out.getvalue() == "error getting signer: boom\n"