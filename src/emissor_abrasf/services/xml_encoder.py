from __future__ import annotations

from lxml import etree


def serialize_envelope(envelope: etree._Element) -> bytes:
    """Serialize the RPS envelope as UTF-8 with an XML declaration.

    Returns the exact bytes that are persisted as ``xml_envio`` and posted
    to the authority.
    """
    return etree.tostring(
        envelope,
        xml_declaration=True,
        encoding="utf-8",
    )
