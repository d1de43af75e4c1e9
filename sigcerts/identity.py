"""Ephemeral signing identities backed by a Fulcio certificate."""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass, field
from typing import TextIO

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from sigcerts.fulcio import Client

_PEM_BLOCK = re.compile(
    rb"-----BEGIN ([A-Z0-9 ]+)-----.*?-----END \1-----", re.DOTALL
)
_SIGNER_TYPES = (ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey, ed25519.Ed25519PrivateKey)


def _first_block(data: bytes) -> bytes:
    match = _PEM_BLOCK.search(data or b"")
    if match is None:
        raise ValueError("no PEM data found")
    return match.group(0)


@dataclass
class Identity:
    """A private key together with its certificate and certificate chain."""

    private_key: object
    cert_pem: bytes
    chain_pem: bytes = b""

    def certificate(self) -> x509.Certificate:
        """The identity's certificate (the first PEM block of cert_pem)."""
        return x509.load_pem_x509_certificate(_first_block(self.cert_pem))

    def certificate_chain(self) -> list[x509.Certificate]:
        """The certificate followed by the chain's first PEM block."""
        chain = x509.load_pem_x509_certificates(_first_block(self.chain_pem))
        return [self.certificate(), *chain]

    def signer(self) -> object:
        """The private key, checked to be usable for signing."""
        if not isinstance(self.private_key, _SIGNER_TYPES):
            raise TypeError(
                f"error creating signer: unsupported key type {type(self.private_key).__name__}"
            )
        return self.private_key

    def public_key(self) -> object:
        public = getattr(self.private_key, "public_key", None)
        if not callable(public):
            raise TypeError("private key does not implement public key method")
        return public()

    def delete(self) -> None:
        """Forget this identity; the key is ephemeral, so it and its certificates are dropped."""
        self.private_key = None
        self.cert_pem = b""
        self.chain_pem = b""

    def close(self) -> None:
        """Release the reference to the private key held by the identity."""
        self.private_key = None


@dataclass
class IdentityFactory:
    """Creates identities, reporting failures to an output stream."""

    output: TextIO = field(default_factory=lambda: sys.stdout)

    def new_identity(self, client: Client) -> Identity:
        """Generate a P-256 key and obtain a certificate for it from client."""
        priv = ec.generate_private_key(ec.SECP256R1())
        try:
            cert = client.get_cert(priv)
        except Exception as exc:
            print("error getting signer:", exc, file=self.output)
            raise
        return Identity(private_key=priv, cert_pem=cert.cert_pem, chain_pem=cert.chain_pem)