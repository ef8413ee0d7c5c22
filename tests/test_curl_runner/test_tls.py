import asyncio
import base64
import datetime
import ipaddress
import logging
import ssl

import httpx
import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

import sys, os
target_path = os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), "../.."))
if target_path not in sys.path:
    sys.path.insert(0, target_path)

from tooling.curl_runner import CertificatePinError, CurlRunner, MappingEnvironment, ProxySpec, TLSConfigError, TLSSpec
from tooling.curl_runner.proxy import build_transport
from tooling.curl_runner.tls import (
    PinningBackend,
    PinningStream,
    TLSMaterial,
    build_ssl_context,
    certificate_pins,
    check_material,
    load_tls_material,
    pin_transport,
    verify_pins,
)


def _self_signed(cn: str = "test.local"):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return cert, key


def _pem(cert, key):
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return cert_pem, key_pem


@pytest.fixture(scope="module")
def identity():
    cert, key = _self_signed()
    cert_pem, key_pem = _pem(cert, key)
    return {
        "cert": cert,
        "der": cert.public_bytes(serialization.Encoding.DER),
        "cert_pem": cert_pem,
        "key_pem": key_pem,
    }


@pytest.fixture
def identity_files(identity, tmp_path):
    cert_path = tmp_path / "client.pem"
    key_path = tmp_path / "client.key"
    cert_path.write_bytes(identity["cert_pem"])
    key_path.write_bytes(identity["key_pem"])
    return str(cert_path), str(key_path)


# ----------------------------
# Pins
# ----------------------------

def test_certificate_pins_contain_both_forms(identity):
    cert = identity["cert"]
    spki = cert.public_key().public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    digest = hashes.Hash(hashes.SHA256())
    digest.update(spki)

    pins = certificate_pins(identity["der"])
    assert cert.fingerprint(hashes.SHA256()).hex() in pins
    assert "sha256//" + base64.b64encode(digest.finalize()).decode() in pins


def test_verify_pins_accepts_any_matching_pin(identity):
    hex_pin = identity["cert"].fingerprint(hashes.SHA256()).hex()
    colon_upper = ":".join(hex_pin[i:i + 2] for i in range(0, len(hex_pin), 2)).upper()

    verify_pins(identity["der"], ["sha256//bm9wZQ==", colon_upper])


def test_verify_pins_rejects_mismatch(identity):
    with pytest.raises(CertificatePinError):
        verify_pins(identity["der"], ["00" * 32])


def test_verify_pins_needs_a_certificate():
    with pytest.raises(CertificatePinError):
        verify_pins(None, ["00" * 32])


def test_no_pins_is_a_no_op():
    verify_pins(None, [])


class _FakeSSLObject:
    def __init__(self, der):
        self.der = der

    def getpeercert(self, binary_form=False):
        return self.der


class _FakeStream:
    """Stands in for an httpcore network stream; start_tls records the TLS stream it hands out."""

    def __init__(self, der, *, secured=False):
        self.der = der
        self.secured = secured
        self.closed = False
        self.written = []
        self.upgraded = None

    async def read(self, max_bytes, timeout=None):
        return b""

    async def write(self, buffer, timeout=None):
        self.written.append(buffer)

    async def aclose(self):
        self.closed = True

    async def start_tls(self, ssl_context, server_hostname=None, timeout=None):
        self.upgraded = _FakeStream(self.der, secured=True)
        return self.upgraded

    def get_extra_info(self, info):
        if info == "ssl_object" and self.secured:
            return _FakeSSLObject(self.der)
        return None


@pytest.mark.asyncio
async def test_pin_mismatch_closes_the_connection_at_handshake(identity):
    raw = _FakeStream(identity["der"])
    stream = PinningStream(raw, ["ff" * 32])

    with pytest.raises(CertificatePinError):
        await stream.start_tls(ssl.create_default_context(), "x.test")
    assert raw.upgraded.closed
    assert raw.upgraded.written == []


@pytest.mark.asyncio
async def test_pin_match_returns_a_usable_stream(identity):
    good = identity["cert"].fingerprint(hashes.SHA256()).hex()
    raw = _FakeStream(identity["der"])

    tls_stream = await PinningStream(raw, [good]).start_tls(ssl.create_default_context(), "x.test")
    assert isinstance(tls_stream, PinningStream)
    await tls_stream.write(b"GET / HTTP/1.1\r\n\r\n")
    assert raw.upgraded.written == [b"GET / HTTP/1.1\r\n\r\n"]
    assert not raw.upgraded.closed


@pytest.mark.asyncio
async def test_skipped_hosts_are_not_pinned(identity):
    raw = _FakeStream(identity["der"])
    stream = PinningStream(raw, ["ff" * 32], frozenset({"proxy.test"}))

    proxy_tls = await stream.start_tls(ssl.create_default_context(), "proxy.test")
    # the tunnelled origin handshake is still checked
    with pytest.raises(CertificatePinError):
        await proxy_tls.start_tls(ssl.create_default_context(), "origin.test")


def test_pin_transport_wraps_the_network_backend():
    plain = httpx.AsyncHTTPTransport()
    before = plain._pool._network_backend
    assert pin_transport(plain, ()) is plain
    assert plain._pool._network_backend is before

    pinned = pin_transport(httpx.AsyncHTTPTransport(), ["ab" * 32])
    assert isinstance(pinned._pool._network_backend, PinningBackend)


def test_https_proxy_handshake_is_exempt_from_pins():
    ctx = ssl.create_default_context()
    t = build_transport(ProxySpec("https://proxy.test:8443"), ctx, pins=("ab" * 32,))
    backend = t._pool._network_backend
    assert isinstance(backend, PinningBackend)
    assert backend._skip_hosts == frozenset({"proxy.test"})

    t = build_transport(ProxySpec("http://proxy.test:3128"), ctx, pins=("ab" * 32,))
    assert t._pool._network_backend._skip_hosts == frozenset()


# ----------------------------
# Pins against a live TLS server
# ----------------------------

def _issue_local_chain():
    """A CA and a 127.0.0.1 / localhost server certificate it signed."""
    now = datetime.datetime.now(datetime.timezone.utc)

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "curl-runner test CA")])
    ca_ski = x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key())
    ca = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(ca_ski, critical=False)
        .sign(ca_key, hashes.SHA256())
    )

    key = ec.generate_private_key(ec.SECP256R1())
    leaf = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")]))
        .issuer_name(ca_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(
            x509.SubjectAlternativeName([
                x509.DNSName("localhost"),
                x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
            ]),
            critical=False,
        )
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=False,
                crl_sign=False, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ca_ski), critical=False)
        .sign(ca_key, hashes.SHA256())
    )
    return ca, leaf, key


@pytest_asyncio.fixture
async def tls_server(tmp_path):
    ca, leaf, key = _issue_local_chain()
    ca_path = tmp_path / "ca.pem"
    ca_path.write_bytes(ca.public_bytes(serialization.Encoding.PEM))
    leaf_pem, key_pem = _pem(leaf, key)
    (tmp_path / "server.pem").write_bytes(leaf_pem)
    (tmp_path / "server.key").write_bytes(key_pem)

    server_ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    server_ctx.load_cert_chain(str(tmp_path / "server.pem"), str(tmp_path / "server.key"))

    received = bytearray()

    async def handle(reader, writer):
        try:
            while b"\r\n\r\n" not in received:
                chunk = await reader.read(65536)
                if not chunk:
                    return
                received.extend(chunk)
            writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\nConnection: close\r\n\r\nok")
            await writer.drain()
        except (ConnectionError, ssl.SSLError):
            return
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0, ssl=server_ctx)
    port = server.sockets[0].getsockname()[1]
    try:
        yield {
            "url": f"https://127.0.0.1:{port}/",
            "ca_path": str(ca_path),
            "leaf_pin": leaf.fingerprint(hashes.SHA256()).hex(),
            "received": received,
        }
    finally:
        server.close()
        await server.wait_closed()


def _secret_call(server, pin):
    return [
        "--cacert", server["ca_path"],
        "--pinnedpubkey", pin,
        "-m", "5",
        "-H", "Authorization: Bearer topsecret",
        server["url"],
    ]


@pytest.mark.asyncio
async def test_wrong_pin_never_sends_the_request(tls_server, settings):
    runner = CurlRunner(env=MappingEnvironment({}), settings=settings)
    wrong = "sha256//" + base64.b64encode(b"\x00" * 32).decode("ascii")

    with pytest.raises(CertificatePinError):
        await runner.run(_secret_call(tls_server, wrong))
    assert b"topsecret" not in tls_server["received"]
    assert b"Authorization" not in tls_server["received"]


@pytest.mark.asyncio
async def test_matching_pin_completes_the_request(tls_server, settings):
    runner = CurlRunner(env=MappingEnvironment({}), settings=settings)

    response = await runner.run(_secret_call(tls_server, tls_server["leaf_pin"]))
    assert response.status_code == 200
    assert response.text == "ok"
    assert b"Bearer topsecret" in tls_server["received"]


# ----------------------------
# Material
# ----------------------------

def test_matching_cert_and_key(identity):
    check_material(TLSMaterial(cert_pem=identity["cert_pem"], key_pem=identity["key_pem"]))


def test_combined_pem_is_accepted(identity):
    combined = identity["cert_pem"] + identity["key_pem"]
    check_material(TLSMaterial(cert_pem=combined))


def test_mismatched_key_is_rejected(identity):
    _, other_key = _self_signed("other.local")
    _, other_key_pem = _pem(identity["cert"], other_key)
    with pytest.raises(TLSConfigError) as ei:
        check_material(TLSMaterial(cert_pem=identity["cert_pem"], key_pem=other_key_pem))
    assert ei.value.field == "tls.key_path"


@pytest.mark.parametrize("field,kw", [
    ("tls.ca_path", {"ca_pem": b"not a certificate"}),
    ("tls.cert_path", {"cert_pem": b"not a certificate"}),
])
def test_garbage_material(field, kw):
    with pytest.raises(TLSConfigError) as ei:
        check_material(TLSMaterial(**kw))
    assert ei.value.field == field


def test_missing_files(tmp_path):
    with pytest.raises(TLSConfigError) as ei:
        load_tls_material(TLSSpec(cert_path=str(tmp_path / "nope.pem")))
    assert ei.value.field == "tls.cert_path"


def test_load_tls_material_reads_files(identity, identity_files):
    cert_path, key_path = identity_files
    material = load_tls_material(TLSSpec(cert_path=cert_path, key_path=key_path, ca_path=cert_path))
    assert material.cert_pem == identity["cert_pem"]
    assert material.key_pem == identity["key_pem"]
    assert material.ca_pem == identity["cert_pem"]
    assert material.cert_path == cert_path


# ----------------------------
# SSL context
# ----------------------------

def test_default_context_verifies():
    ctx = build_ssl_context(TLSSpec())
    assert ctx.verify_mode == ssl.CERT_REQUIRED
    assert ctx.check_hostname is True
    assert ctx.minimum_version == ssl.TLSVersion.TLSv1_2


def test_insecure_context_warns(caplog):
    caplog.set_level(logging.WARNING, logger="tooling.curl_runner")
    ctx = build_ssl_context(TLSSpec(insecure=True))
    assert ctx.verify_mode == ssl.CERT_NONE
    assert ctx.check_hostname is False
    assert any("verification disabled" in r.getMessage() for r in caplog.records)


def test_tls13_minimum():
    assert build_ssl_context(TLSSpec(min_version="1.3")).minimum_version == ssl.TLSVersion.TLSv1_3


def test_custom_ca_bundle(identity):
    ctx = build_ssl_context(TLSSpec(ca_path="ca.pem"), TLSMaterial(ca_pem=identity["cert_pem"]))
    assert ctx.cert_store_stats()["x509_ca"] == 1
    assert ctx.verify_mode == ssl.CERT_REQUIRED


def test_client_certificate(identity_files):
    cert_path, key_path = identity_files
    spec = TLSSpec(cert_path=cert_path, key_path=key_path)
    build_ssl_context(spec, load_tls_material(spec))


def test_invalid_cipher_string():
    with pytest.raises(TLSConfigError):
        build_ssl_context(TLSSpec(ciphers="NOT-A-REAL-CIPHER"))


def test_unknown_min_version():
    with pytest.raises(TLSConfigError):
        build_ssl_context(TLSSpec(min_version="1.1"))
