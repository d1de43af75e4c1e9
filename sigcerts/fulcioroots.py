"""Building root and intermediate certificate pools from certificate sources."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Union

from cryptography import x509

CertificateSource = Callable[[], list]


class CertPool:
    """An unordered, de-duplicated collection of certificates."""

    def __init__(self, certs: Iterable[x509.Certificate] = ()):
        self._certs: list[x509.Certificate] = []
        for cert in certs:
            self.add_cert(cert)

    def add_cert(self, cert: x509.Certificate) -> None:
        if cert not in self._certs:
            self._certs.append(cert)

    def __contains__(self, cert: object) -> bool:
        return cert in self._certs

    def __iter__(self) -> Iterator[x509.Certificate]:
        return iter(self._certs)

    def __len__(self) -> int:
        return len(self._certs)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CertPool):
            return NotImplemented
        return len(self) == len(other) and all(c in other for c in self)

    __hash__ = None  # type: ignore[assignment]


def new(root: CertPool, *args: CertificateSource) -> tuple[CertPool, Optional[CertPool]]:
    """Fill root with self-signed certificates from the sources; others go to an intermediate pool."""
    certs: list[x509.Certificate] = []
    for source in args:
        certs.extend(source())
    intermediate: Optional[CertPool] = None
    for cert in certs:
        if cert.subject.public_bytes() == cert.issuer.public_bytes():
            root.add_cert(cert)
        else:
            if intermediate is None:
                intermediate = CertPool()
            intermediate.add_cert(cert)
    return root, intermediate


def from_file(path: Union[str, Path]) -> CertificateSource:
    """A source that loads PEM certificates from a file."""

    def load() -> list:
        return x509.load_pem_x509_certificates(Path(path).read_bytes())

    return load


def static(*args: x509.Certificate) -> CertificateSource:
    """A source that yields a fixed set of certificates."""
    certs = list(args)
    return lambda: list(certs)