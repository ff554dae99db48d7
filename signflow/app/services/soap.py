"""
SOAP 1.1 envelope construction and response parsing.

Envelopes carry a WS-Security UsernameToken with the Provider client
credentials. Responses are parsed with a hardened lxml parser (no entity
resolution, no network access) and searched by local name so namespace
prefixes chosen by the server do not matter.
"""

from __future__ import annotations

import logging
import secrets
from typing import Iterable, Optional

import httpx
from lxml import etree

from signflow.app.core.config import Settings
from signflow.app.services.resilience import (
    CallOutcome,
    RemoteError,
    Success,
    send_request,
)

logger = logging.getLogger("signflow.soap")

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
WSSE_NS = (
    "http://docs.oasis-open.org/wss/2004/01/"
    "oasis-200401-wss-wssecurity-secext-1.0.xsd"
)
PASSWORD_TEXT = (
    "http://docs.oasis-open.org/wss/2004/01/"
    "oasis-200401-wss-username-token-profile-1.0#PasswordText"
)
SOAP_HEADERS = {
    "Content-Type": "text/xml; charset=utf-8",
    "SOAPAction": '""',
}

_PARSER = etree.XMLParser(
    resolve_entities=False,
    no_network=True,
    huge_tree=True,
    remove_blank_text=True,
)


def new_request_id() -> str:
    return secrets.token_hex(10)


def build_envelope(body: etree._Element, *, username: str, password: str) -> bytes:
    envelope = etree.Element(
        f"{{{SOAP_ENV_NS}}}Envelope",
        nsmap={"soapenv": SOAP_ENV_NS},
    )
    header = etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
    security = etree.SubElement(
        header,
        f"{{{WSSE_NS}}}Security",
        nsmap={"wsse": WSSE_NS},
    )
    security.set(f"{{{SOAP_ENV_NS}}}mustUnderstand", "1")
    token = etree.SubElement(security, f"{{{WSSE_NS}}}UsernameToken")
    etree.SubElement(token, f"{{{WSSE_NS}}}Username").text = username
    pwd = etree.SubElement(token, f"{{{WSSE_NS}}}Password", Type=PASSWORD_TEXT)
    pwd.text = password

    etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body").append(body)
    return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")


def parse_xml(payload: bytes) -> etree._Element:
    """Parse a response document; raises ValueError on malformed XML."""
    try:
        return etree.fromstring(payload, parser=_PARSER)
    except etree.XMLSyntaxError as exc:
        raise ValueError("malformed XML response") from exc


def find_text(root: etree._Element, *local_names: str) -> Optional[str]:
    """First non-empty text of any element with one of ``local_names``."""
    for name in local_names:
        for element in root.iter(f"{{*}}{name}"):
            text = (element.text or "").strip()
            if text:
                return text
    return None


def iter_texts(root: etree._Element, local_name: str) -> Iterable[str]:
    for element in root.iter(f"{{*}}{local_name}"):
        text = (element.text or "").strip()
        if text:
            yield text


class SoapTransport:
    """Posts enveloped bodies and returns the parsed response root."""

    def __init__(self, *, http_client: httpx.AsyncClient, settings: Settings) -> None:
        self.client = http_client
        self.settings = settings

    def envelope(self, body: etree._Element) -> bytes:
        return build_envelope(
            body,
            username=self.settings.provider_client_id,
            password=self.settings.provider_client_secret.get_secret_value(),
        )

    async def post(
        self,
        endpoint: str,
        body: etree._Element,
        *,
        request_id: str,
    ) -> CallOutcome:
        outcome = await send_request(
            self.client,
            "POST",
            endpoint,
            content=self.envelope(body),
            headers=SOAP_HEADERS,
        )
        if not isinstance(outcome, Success):
            logger.error(
                "soap_call_failed",
                extra={"request_id": request_id, "outcome": outcome.kind},
            )
            return outcome

        try:
            root = parse_xml(outcome.value.content)
        except ValueError:
            return RemoteError(code=502, detail="malformed SOAP response")

        logger.info(
            "soap_call_completed",
            extra={
                "request_id": request_id,
                "result_major": find_text(root, "ResultMajor") or "UNKNOWN",
            },
        )
        return Success(value=root)
