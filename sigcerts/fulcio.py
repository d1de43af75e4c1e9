"""Client for exchanging a private key and an OIDC identity for a Fulcio certificate."""

from __future__ import annotations

import base64
import hashlib
import json
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Callable, Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

_END_CERTIFICATE = b"-----END CERTIFICATE-----"

_KEY_ALGORITHMS = (
    (ec.EllipticCurvePrivateKey, "ecdsa"),
    (rsa.RSAPrivateKey, "rsa"),
    (ed25519.Ed25519PrivateKey, "ed25519"),
)


class FulcioError(Exception):
    """Raised when a certificate cannot be obtained."""


@dataclass(frozen=True)
class IDToken:
    """An OIDC identity token: its subject and its raw encoded form."""

    subject: str
    raw_string: str = ""


TokenGetter = Callable[["OIDCOptions"], IDToken]


@dataclass
class OIDCOptions:
    """Settings for the OIDC flow that produces an identity token."""

    issuer: str = ""
    client_id: str = ""
    client_secret: str = ""
    redirect_url: str = ""
    token_getter: Optional[TokenGetter] = None


@dataclass(frozen=True)
class PublicKeyInfo:
    """A public key as sent to Fulcio: algorithm name and DER content."""

    algorithm: str
    content: bytes


@dataclass(frozen=True)
class CertificateRequest:
    """A signing-certificate request."""

    public_key: PublicKeyInfo
    signed_email_address: bytes

    def to_json(self) -> bytes:
        return json.dumps({
            "publicKey": {
                "algorithm": self.public_key.algorithm,
                "content": base64.b64encode(self.public_key.content).decode("ascii"),
            },
            "signedEmailAddress": base64.b64encode(self.signed_email_address).decode("ascii"),
        }).encode("utf-8")


@dataclass(frozen=True)
class CertificateResponse:
    """The issued certificate and the chain that certifies it, both PEM."""

    cert_pem: bytes = b""
    chain_pem: bytes = b""

    @classmethod
    def from_pem_chain(cls, data: bytes) -> "CertificateResponse":
        """Split a PEM chain into its first certificate and the rest."""
        index = data.find(_END_CERTIFICATE)
        if index < 0:
            raise FulcioError("no certificate in response")
        end = index + len(_END_CERTIFICATE)
        return cls(data[:end].strip() + b"\n", data[end:].lstrip())


SigningCert = Callable[[CertificateRequest, str], CertificateResponse]


def key_algorithm(signer: object) -> str:
    """Name the algorithm of a signer; "" for None.

    Known key types map to their algorithm; any other object is named after
    the module that defines its type.
    """
    if signer is None:
        return ""
    for key_type, name in _KEY_ALGORITHMS:
        if isinstance(signer, key_type):
            return name
    return type(signer).__module__.rsplit(".", 1)[-1]


def _sign_digest(priv: object, digest: bytes) -> bytes:
    if isinstance(priv, ec.EllipticCurvePrivateKey):
        return priv.sign(digest, ec.ECDSA(Prehashed(hashes.SHA256())))
    if isinstance(priv, rsa.RSAPrivateKey):
        return priv.sign(digest, padding.PKCS1v15(), Prehashed(hashes.SHA256()))
    if isinstance(priv, ed25519.Ed25519PrivateKey):
        return priv.sign(digest)
    raise FulcioError(f"unsupported key type {type(priv).__name__}")


@dataclass
class Client:
    """A Fulcio client bound to a server URL and OIDC settings."""

    fulcio_url: str
    oidc: OIDCOptions = field(default_factory=OIDCOptions)
    signing_cert: Optional[SigningCert] = None
    user_agent: str = "sigcerts"

    def __post_init__(self) -> None:
        parts = urllib.parse.urlsplit(self.fulcio_url)
        parts.port  # raises ValueError for a malformed port
        self.fulcio_url = self.fulcio_url.rstrip("/")
        if self.signing_cert is None:
            self.signing_cert = self._http_signing_cert

    def get_cert(self, priv: object) -> CertificateResponse:
        """Exchange the given private key for a Fulcio certificate."""
        try:
            public_key = priv.public_key()  # type: ignore[attr-defined]
        except AttributeError as exc:
            raise FulcioError("private key has no public key") from exc
        pub_bytes = public_key.public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        token = self._oidc_connect()
        digest = hashlib.sha256(token.subject.encode("utf-8")).digest()
        proof = _sign_digest(priv, digest)
        request = CertificateRequest(
            public_key=PublicKeyInfo(algorithm=key_algorithm(priv), content=pub_bytes),
            signed_email_address=proof,
        )
        assert self.signing_cert is not None
        return self.signing_cert(request, token.raw_string)

    def _oidc_connect(self) -> IDToken:
        if self.oidc.token_getter is None:
            raise FulcioError("no OIDC token getter configured")
        return self.oidc.token_getter(self.oidc)

    def _http_signing_cert(self, request: CertificateRequest, id_token: str) -> CertificateResponse:
        http_request = urllib.request.Request(
            f"{self.fulcio_url}/api/v1/signingCert",
            data=request.to_json(),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Accept": "application/pem-certificate-chain",
                "Authorization": f"Bearer {id_token}",
                "User-Agent": self.user_agent,
            },
        )
        try:
            with urllib.request.urlopen(http_request) as reply:
                body = reply.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", "replace")
            raise FulcioError(f"fulcio returned {exc.code}: {detail}") from exc
        return CertificateResponse.from_pem_chain(body)