import base64
import logging
import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import Any, FrozenSet, Iterable, Optional, Sequence

import httpcore
import httpx
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization

from .config import TLSSpec
from .errors import CertificatePinError, TLSConfigError


logger = logging.getLogger(__name__)


# ----------------------------
# Loaded material
# ----------------------------

@dataclass(frozen=True)
class TLSMaterial:
    """
    Certificate material already read from disk (or elsewhere).
    Paths are kept because ssl.load_cert_chain only accepts files.
    """
    ca_pem: Optional[bytes] = None
    cert_pem: Optional[bytes] = None
    key_pem: Optional[bytes] = None
    cert_path: Optional[str] = None
    key_path: Optional[str] = None


def load_tls_material(spec: TLSSpec) -> TLSMaterial:
    """File collaborator: read the PEM files named by a TLSSpec."""
    def _read(path: Optional[str], what: str) -> Optional[bytes]:
        if not path:
            return None
        try:
            return Path(path).expanduser().read_bytes()
        except OSError as e:
            raise TLSConfigError(f"cannot read {what} {path!r}: {e.strerror or e}", field=f"tls.{what}") from e

    return TLSMaterial(
        ca_pem=_read(spec.ca_path, "ca_path"),
        cert_pem=_read(spec.cert_path, "cert_path"),
        key_pem=_read(spec.key_path, "key_path"),
        cert_path=spec.cert_path,
        key_path=spec.key_path,
    )


def _public_der(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def check_material(material: TLSMaterial) -> None:
    """
    Parse everything up front so a bad bundle fails as TLSConfigError
    before any connection is attempted:
      - the CA bundle holds at least one certificate
      - the client certificate parses and matches its private key
    """
    if material.ca_pem is not None:
        try:
            cas = x509.load_pem_x509_certificates(material.ca_pem)
        except ValueError as e:
            raise TLSConfigError(f"invalid CA bundle: {e}", field="tls.ca_path") from e
        if not cas:
            raise TLSConfigError("CA bundle contains no certificates", field="tls.ca_path")

    if material.cert_pem is None:
        return

    try:
        cert = x509.load_pem_x509_certificate(material.cert_pem)
    except ValueError as e:
        raise TLSConfigError(f"invalid client certificate: {e}", field="tls.cert_path") from e

    key_pem = material.key_pem if material.key_pem is not None else material.cert_pem
    try:
        key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise TLSConfigError(f"invalid client key: {e}", field="tls.key_path") from e

    if _public_der(cert.public_key()) != _public_der(key.public_key()):
        raise TLSConfigError("client certificate does not match private key", field="tls.key_path")


# ----------------------------
# SSL context
# ----------------------------

_MIN_VERSIONS = {
    None: ssl.TLSVersion.TLSv1_2,
    "1.2": ssl.TLSVersion.TLSv1_2,
    "1.3": ssl.TLSVersion.TLSv1_3,
}


def build_ssl_context(spec: TLSSpec, material: Optional[TLSMaterial] = None) -> ssl.SSLContext:
    """
    Fresh SSLContext for one call. Contexts are never shared between calls
    so per-call tweaks (ALPN, SNI) cannot leak into other requests.
    """
    material = material or TLSMaterial()
    check_material(material)

    try:
        if spec.insecure:
            logger.warning("TLS certificate verification disabled (--insecure)")
            ctx = httpx.create_ssl_context(verify=False, trust_env=False)
        elif material.ca_pem is not None:
            ctx = ssl.create_default_context(cadata=material.ca_pem.decode("ascii"))
        else:
            ctx = httpx.create_ssl_context(verify=True, trust_env=False)

        ctx.minimum_version = _MIN_VERSIONS[spec.min_version]

        if spec.ciphers:
            ctx.set_ciphers(spec.ciphers)

        if material.cert_path:
            ctx.load_cert_chain(certfile=material.cert_path, keyfile=material.key_path)
    except KeyError:
        raise TLSConfigError(f"unsupported TLS version {spec.min_version!r}", field="tls.min_version") from None
    except (ssl.SSLError, UnicodeDecodeError, OSError) as e:
        raise TLSConfigError(f"cannot build TLS context: {e}") from e

    return ctx


# ----------------------------
# Pinning
# ----------------------------

def normalize_pin(pin: str) -> str:
    if pin.startswith("sha256//"):
        return pin
    return pin.replace(":", "").replace(" ", "").lower()


def certificate_pins(der: bytes) -> set[str]:
    """Both pin forms for a DER certificate: hex cert hash and sha256//SPKI."""
    cert = x509.load_der_x509_certificate(der)
    cert_hash = cert.fingerprint(hashes.SHA256()).hex()

    digest = hashes.Hash(hashes.SHA256())
    digest.update(_public_der(cert.public_key()))
    spki = "sha256//" + base64.b64encode(digest.finalize()).decode("ascii")
    return {cert_hash, spki}


def verify_pins(der: Optional[bytes], pins: Sequence[str], *, url: Optional[str] = None) -> None:
    if not pins:
        return
    if not der:
        raise CertificatePinError("no peer certificate available for pin check", url=url)
    try:
        actual = certificate_pins(der)
    except ValueError as e:
        raise CertificatePinError(f"cannot parse peer certificate: {e}", url=url) from e
    wanted = {normalize_pin(p) for p in pins}
    if not actual & wanted:
        raise CertificatePinError("peer certificate does not match any pinned fingerprint", url=url)


def peer_der(stream: httpcore.AsyncNetworkStream) -> Optional[bytes]:
    ssl_object = stream.get_extra_info("ssl_object")
    if ssl_object is None:
        return None
    return ssl_object.getpeercert(binary_form=True)


class PinningStream(httpcore.AsyncNetworkStream):
    """
    Network stream that checks the pins as soon as a TLS handshake
    completes. A mismatch closes the connection before httpcore writes any
    request bytes on it.

    `skip_hosts` names TLS peers that are not the origin (an https proxy).
    """

    def __init__(
        self,
        stream: httpcore.AsyncNetworkStream,
        pins: Sequence[str],
        skip_hosts: FrozenSet[str] = frozenset(),
    ):
        self._stream = stream
        self._pins = tuple(pins)
        self._skip_hosts = skip_hosts

    async def read(self, max_bytes: int, timeout: Optional[float] = None) -> bytes:
        return await self._stream.read(max_bytes, timeout)

    async def write(self, buffer: bytes, timeout: Optional[float] = None) -> None:
        await self._stream.write(buffer, timeout)

    async def aclose(self) -> None:
        await self._stream.aclose()

    async def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> httpcore.AsyncNetworkStream:
        stream = await self._stream.start_tls(ssl_context, server_hostname, timeout)
        if server_hostname not in self._skip_hosts:
            try:
                verify_pins(peer_der(stream), self._pins, url=f"https://{server_hostname}")
            except CertificatePinError:
                await stream.aclose()
                raise
            logger.debug("certificate pin matched for %s", server_hostname)
        # tunnelled TLS (CONNECT through an https proxy) starts on this stream
        return PinningStream(stream, self._pins, self._skip_hosts)

    def get_extra_info(self, info: str) -> Any:
        return self._stream.get_extra_info(info)


class PinningBackend(httpcore.AsyncNetworkBackend):
    """Wraps another backend so every stream it opens is a PinningStream."""

    def __init__(
        self,
        backend: httpcore.AsyncNetworkBackend,
        pins: Sequence[str],
        skip_hosts: Iterable[str] = (),
    ):
        self._backend = backend
        self._pins = tuple(pins)
        self._skip_hosts = frozenset(skip_hosts)

    async def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: Optional[float] = None,
        local_address: Optional[str] = None,
        socket_options: Optional[Iterable[Any]] = None,
    ) -> httpcore.AsyncNetworkStream:
        stream = await self._backend.connect_tcp(
            host,
            port,
            timeout=timeout,
            local_address=local_address,
            socket_options=socket_options,
        )
        return PinningStream(stream, self._pins, self._skip_hosts)

    async def connect_unix_socket(
        self,
        path: str,
        timeout: Optional[float] = None,
        socket_options: Optional[Iterable[Any]] = None,
    ) -> httpcore.AsyncNetworkStream:
        stream = await self._backend.connect_unix_socket(path, timeout=timeout, socket_options=socket_options)
        return PinningStream(stream, self._pins, self._skip_hosts)

    async def sleep(self, seconds: float) -> None:
        await self._backend.sleep(seconds)


def pin_transport(
    transport: httpx.AsyncHTTPTransport,
    pins: Sequence[str],
    skip_hosts: Iterable[str] = (),
) -> httpx.AsyncHTTPTransport:
    """
    Install pin checking on an httpx transport. httpx takes no network
    backend argument; its httpcore pool opens every connection through
    `_network_backend`, so that is wrapped in place.
    """
    if not pins:
        return transport
    pool = transport._pool
    pool._network_backend = PinningBackend(pool._network_backend, pins, skip_hosts)
    return transport
