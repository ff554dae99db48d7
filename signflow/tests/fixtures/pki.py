"""
Throwaway PKI for tests that need a real PAdES signature.

The chain is a self-signed root and one leaf. Neither carries CRL or
OCSP endpoints, so revocation collection never reaches the network.
"""

import io
from datetime import datetime, timedelta, timezone

from asn1crypto import x509 as asn1_x509
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from pydantic import BaseModel, ConfigDict
from pyhanko.keys import load_private_key_from_pemder_data
from pyhanko.pdf_utils.incremental_writer import IncrementalPdfFileWriter
from pyhanko.sign import signers
from pyhanko_certvalidator.registry import SimpleCertificateStore


class SigningChain(BaseModel):
    root: asn1_x509.Certificate
    leaf: asn1_x509.Certificate
    leaf_key_pem: bytes

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    @property
    def root_pem(self) -> bytes:
        return x509.load_der_x509_certificate(self.root.dump()).public_bytes(
            serialization.Encoding.PEM
        )


def _name(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Signflow Test"),
            x509.NameAttribute(NameOID.COUNTRY_NAME, "FI"),
        ]
    )


def _to_asn1(cert: x509.Certificate) -> asn1_x509.Certificate:
    return asn1_x509.Certificate.load(cert.public_bytes(serialization.Encoding.DER))


def build_chain() -> SigningChain:
    now = datetime.now(timezone.utc)
    root_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    leaf_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    root_ski = x509.SubjectKeyIdentifier.from_public_key(root_key.public_key())

    root = (
        x509.CertificateBuilder()
        .subject_name(_name("Signflow Test Root"))
        .issuer_name(_name("Signflow Test Root"))
        .public_key(root_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(root_ski, critical=False)
        .sign(root_key, hashes.SHA256())
    )

    leaf = (
        x509.CertificateBuilder()
        .subject_name(_name("Signflow Test Signer"))
        .issuer_name(root.subject)
        .public_key(leaf_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=True,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(leaf_key.public_key()),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(root_ski),
            critical=False,
        )
        .sign(root_key, hashes.SHA256())
    )

    return SigningChain(
        root=_to_asn1(root),
        leaf=_to_asn1(leaf),
        leaf_key_pem=leaf_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ),
    )


async def sign_with_chain(pdf: bytes, chain: SigningChain) -> bytes:
    """Apply one PAdES signature made with the chain's leaf."""
    signer = signers.SimpleSigner(
        signing_cert=chain.leaf,
        signing_key=load_private_key_from_pemder_data(chain.leaf_key_pem, None),
        cert_registry=SimpleCertificateStore.from_certs([chain.root]),
    )
    output = await signers.async_sign_pdf(
        IncrementalPdfFileWriter(io.BytesIO(pdf)),
        signers.PdfSignatureMetadata(field_name="Signature1"),
        signer=signer,
        output=io.BytesIO(),
    )
    return output.getvalue()
