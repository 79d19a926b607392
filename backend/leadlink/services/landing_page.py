"""
Landing page rendering for WhatsApp redirects.

The page shows a single button that opens WhatsApp with a pre-filled
message. Pure functions: given the destination and campaign, return HTML.
"""

from __future__ import annotations

from dataclasses import dataclass
from html import escape
from typing import Optional
from urllib.parse import quote


DEFAULT_TITLE = "¡Hablemos!"
DEFAULT_DESCRIPTION = "Toca el botón para abrir WhatsApp y comenzar la conversación"
FALLBACK_DESCRIPTION = "Toca el botón para abrir WhatsApp"


@dataclass(frozen=True)
class PageCopy:
    title: str
    description: str


def page_copy_for(campaign: Optional[str]) -> PageCopy:
    """Headline and description, customised for known campaign families."""
    if campaign:
        lowered = campaign.lower()
        if "promo" in lowered:
            return PageCopy(
                "¡Aprovecha la promoción!",
                "Toca el botón para consultar disponibilidad en WhatsApp",
            )
        if "cotizacion" in lowered:
            return PageCopy(
                "¡Solicita tu cotización!",
                "Toca el botón para recibir tu cotización personalizada",
            )
    return PageCopy(DEFAULT_TITLE, DEFAULT_DESCRIPTION)


def build_whatsapp_url(base_url: str, phone_number: str, campaign: Optional[str] = None) -> str:
    """wa.me style link with a pre-filled greeting mentioning the campaign."""
    message = f"Hola! Vengo de la promoción {campaign or 'en redes sociales'}"
    digits = phone_number.lstrip("+")
    return f"{base_url.rstrip('/')}/{digits}?text={quote(message, safe='')}"


def build_fallback_url(base_url: str, phone_number: str) -> str:
    digits = "".join(ch for ch in phone_number if ch.isdigit())
    return f"{base_url.rstrip('/')}/{digits}?text={quote('Hola!', safe='')}"


def render_landing_page(whatsapp_url: str, campaign: Optional[str] = None) -> str:
    """Full landing page for a tracked redirect."""
    copy = page_copy_for(campaign)
    return _page_html(whatsapp_url, copy.title, copy.description)


def render_fallback_page(whatsapp_url: str) -> str:
    """Generic page shown when attribution failed or the phone was invalid."""
    return _page_html(whatsapp_url, DEFAULT_TITLE, FALLBACK_DESCRIPTION)


def _page_html(whatsapp_url: str, title: str, description: str) -> str:
    url = escape(whatsapp_url, quote=True)
    return f"""<!DOCTYPE html>
<html lang="es">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <meta name="robots" content="noindex">
    <title>{escape(title)}</title>
</head>
<body style="margin:0;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;background:#f0f2f5;">
    <div style="max-width:420px;margin:0 auto;text-align:center;padding:80px 24px;">
        <h1 style="color:#1e293b;font-size:28px;margin-bottom:12px;">{escape(title)}</h1>
        <p style="color:#64748b;font-size:18px;margin-bottom:32px;">{escape(description)}</p>
        <a href="{url}" style="
            display:inline-block;background-color:#25d366;color:white;text-decoration:none;
            padding:16px 40px;font-size:18px;border-radius:32px;font-weight:600;
        ">Abrir WhatsApp</a>
    </div>
</body>
</html>
"""
