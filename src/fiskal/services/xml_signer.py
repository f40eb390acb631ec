from __future__ import annotations

from lxml import etree
from signxml.algorithms import (
    CanonicalizationMethod,
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
)
from signxml.signer import XMLSigner


class CisXMLSigner(XMLSigner):
    """XMLSigner that accepts RSA-SHA1/SHA1.

    signxml rejects SHA1 by default; the CIS F73 schema accepts nothing else.
    """

    def check_deprecated_methods(self) -> None:
        pass


def sign_request(request: etree._Element, key_pem: bytes, cert_pem: bytes) -> etree._Element:
    """Sign a ``RacunZahtjev`` with an enveloped RSA-SHA1 signature.

    The reference points at the root's Id and uses Exclusive XML
    Canonicalization 1.0; the certificate goes into KeyInfo/X509Data and the
    Signature element ends up as the last child of the root.
    """
    request_id = request.get("Id")
    if not request_id:
        raise ValueError(f"{etree.QName(request).localname} is missing Id attribute")

    signer = CisXMLSigner(
        method=SignatureConstructionMethod.enveloped,
        signature_algorithm=SignatureMethod.RSA_SHA1,
        digest_algorithm=DigestAlgorithm.SHA1,
        c14n_algorithm=CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0,
    )

    return signer.sign(
        request,
        key=key_pem,
        cert=cert_pem.decode(),
        reference_uri=f"#{request_id}",
    )
