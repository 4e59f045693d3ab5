"""Crypto utilities."""
import ipaddress
import logging
from typing import List
from typing import Optional
from typing import Set
from typing import Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed25519, ed448, rsa
from cryptography.hazmat.primitives.serialization import Encoding

logger = logging.getLogger(__name__)

PEM_CERTIFICATE_BOUNDARY = b'-----BEGIN CERTIFICATE-----'

CertificateIssuerPrivateKeyTypesTpl = (
    dsa.DSAPrivateKey,
    rsa.RSAPrivateKey,
    ec.EllipticCurvePrivateKey,
    ed25519.Ed25519PrivateKey,
    ed448.Ed448PrivateKey,
)


def make_csr(
    private_key_pem: bytes,
    domains: Optional[Union[Set[str], List[str]]] = None,
    must_staple: bool = False,
    ipaddrs: Optional[List[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]] = None,
) -> bytes:
    """Generate a CSR containing domains or IPs as subjectAltNames.

    :param buffer private_key_pem: Private key, in PEM PKCS#8 format.
    :param list domains: List of DNS names to include in subjectAltNames of CSR.
    :param bool must_staple: Whether to include the TLS Feature extension (aka
        OCSP Must Staple: https://tools.ietf.org/html/rfc7633).
    :param list ipaddrs: List of IPaddress(type ipaddress.IPv4Address or ipaddress.IPv6Address)
        names to include in subbjectAltNames of CSR.

    :returns: buffer PEM-encoded Certificate Signing Request.

    """
    private_key = serialization.load_pem_private_key(private_key_pem, password=None)
    if not isinstance(private_key, CertificateIssuerPrivateKeyTypesTpl):
        raise ValueError(f"Invalid private key type: {type(private_key)}")
    if domains is None:
        domains = []
    if ipaddrs is None:
        ipaddrs = []
    if len(domains) + len(ipaddrs) == 0:
        raise ValueError(
            "At least one of domains or ipaddrs parameter need to be not empty"
        )

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([]))
        .add_extension(
            x509.SubjectAlternativeName(
                [x509.DNSName(d) for d in domains]
                + [x509.IPAddress(i) for i in ipaddrs]
            ),
            critical=False,
        )
    )
    if must_staple:
        builder = builder.add_extension(
            # "status_request" is the feature commonly known as OCSP
            # Must-Staple
            x509.TLSFeature([x509.TLSFeatureType.status_request]),
            critical=False,
        )

    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(Encoding.PEM)


def _load_csr(csr: bytes) -> x509.CertificateSigningRequest:
    if csr.lstrip().startswith(b'-----'):
        return x509.load_pem_x509_csr(csr)
    return x509.load_der_x509_csr(csr)


def csr_to_der(csr: bytes) -> bytes:
    """DER encoding of a PEM or DER certificate signing request.

    :raises ValueError: if ``csr`` is not a CSR.

    """
    return _load_csr(csr).public_bytes(Encoding.DER)


def cert_to_der(cert: bytes) -> bytes:
    """DER encoding of the first certificate of a PEM bundle, or of a DER certificate.

    :raises ValueError: if ``cert`` is not a certificate.

    """
    if cert.lstrip().startswith(b'-----'):
        return x509.load_pem_x509_certificate(cert).public_bytes(Encoding.DER)
    return x509.load_der_x509_certificate(cert).public_bytes(Encoding.DER)


def get_names_from_csr(csr: bytes) -> List[str]:
    """DNS names and IP addresses requested by a CSR.

    The first Common Name, if any, comes first; duplicates are dropped.
    """
    req = _load_csr(csr)
    cns = [str(c.value) for c in req.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)]
    try:
        san_ext = req.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        sans: List[str] = []
    else:
        sans = san_ext.value.get_values_for_type(x509.DNSName) + [
            str(ip) for ip in san_ext.value.get_values_for_type(x509.IPAddress)]
    names: List[str] = []
    for name in cns[:1] + sans:
        if name not in names:
            names.append(name)
    return names
