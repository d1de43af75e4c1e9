# sigcerts

Building blocks for keyless code signing:

- **`sigcerts.timestamp`** — RFC 3161 time-stamp structures: requests
  (`Request`), responses (`Response`, `parse_response`), the `TSTInfo`
  payload (`Info`, `parse_info`), `MessageImprint`, `Accuracy`,
  `PKIStatusInfo`, `PKIFreeText` and `EncapsulatedContentInfo`, with DER
  encoding and decoding. Errors are raised as `TimestampError`.
- **`sigcerts.fulcioroots`** — collects certificates from sources
  (`from_file`, `static`) and sorts them into a root `CertPool` and an
  intermediate pool with `new`.
- **`sigcerts.fulcio`** — a `Client` that obtains an OIDC identity token,
  signs the token's subject with a private key to prove possession, and asks
  a Fulcio server for a signing certificate (`get_cert`). `key_algorithm`
  names the algorithm of a key. Failures are raised as `FulcioError`.
- **`sigcerts.identity`** — an `Identity` that holds an ephemeral private key
  together with its certificate and chain, and an `IdentityFactory` that
  creates one.

## Installation

```
pip install .
```

The tests need the `test` extra:

```
pip install ".[test]"
pytest
```

## Timestamps

```python
from sigcerts.timestamp import Request, new_message_imprint, generate_nonce

imprint = new_message_imprint("sha256", b"hello")
req = Request(version=1, message_imprint=imprint, nonce=generate_nonce(), cert_req=True)
der = req.to_der()
```

`new_message_imprint` accepts bytes or a binary stream. `generate_nonce`
returns a random 128-bit integer. `Request.matches(info)` checks that a
`TSTInfo`'s message imprint and nonce are those of the request.

`Request.do(url, client=None)` POSTs the DER request with content type
`application/timestamp-query` and parses the reply, which must have content
type `application/timestamp-reply`. `client` is any callable that takes a
`urllib.request.Request` and returns a response object with `headers` and
`read()`; by default `urllib.request.urlopen` is used.

`parse_response` accepts BER and normalises it to DER. `Response.info()`
raises the status as a `TimestampError` when the authority refused the
request; otherwise it extracts the `Info` from the time-stamp token without
checking the token's signature. `Info.before(t)` is true when the generation
time plus its accuracy is at or before `t`; `Info.after(t)` is true when the
generation time minus its accuracy is at or after `t`.

## Certificate roots

```python
from sigcerts.fulcioroots import CertPool, new, from_file

roots, intermediates = new(CertPool(), from_file("fulcio.crt.pem"))
```

Self-signed certificates (subject equal to issuer) go into the given root
pool; all others go into the intermediate pool, which is `None` when there
are none.

## Certificates from Fulcio

```python
from sigcerts.fulcio import Client, IDToken, OIDCOptions

def get_token(options: OIDCOptions) -> IDToken:
    return IDToken(subject="user@example.com", raw_string="token")

client = Client("https://fulcio.example.com", OIDCOptions(token_getter=get_token))
```

By default the client POSTs a JSON request to `<url>/api/v1/signingCert`
and splits the returned PEM chain into the certificate and the rest of the
chain (`CertificateResponse`). Pass `signing_cert=` to send the
`CertificateRequest` some other way.

## Identities

```python
from sigcerts.identity import IdentityFactory

identity = IdentityFactory().new_identity(client)
cert = identity.certificate()
chain = identity.certificate_chain()
```

`new_identity` generates a P-256 key; if getting the certificate fails, it
writes the error to the factory's `output` stream and re-raises it.
`signer()` returns the private key if it is an EC, RSA or Ed25519 key and
raises `TypeError` otherwise. `delete()` drops the key and both PEM
certificates; `close()` drops the reference to the key.

## What this package does not do

- It runs no OIDC login itself: no browser or device flow. The caller
  supplies a `token_getter` that returns an `IDToken`.
- It keeps no credential cache; each identity gets a fresh key and
  certificate.
- It does not download trusted roots; certificates come from files or
  from certificates passed to `static`.
- It does not verify CMS signatures or time-stamp token signatures.
- It has no command-line tool.