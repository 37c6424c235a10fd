import json
import re
import urllib.error
import urllib.request
from typing import Any, Mapping, Optional

from .config import settings
from .dominican import digits_only

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

# NANP area codes for the Dominican Republic.
DR_AREA_CODES = ("809", "829", "849")


class WhatsappError(RuntimeError):
    pass


def render_template(template: str, variables: Optional[Mapping[str, Any]] = None) -> str:
    """Replace {{name}} placeholders; unknown names are left as-is."""
    variables = variables or {}

    def _sub(m):
        key = m.group(1)
        return str(variables[key]) if key in variables and variables[key] is not None else m.group(0)

    return _PLACEHOLDER.sub(_sub, template or "")


def template_variables(template: str) -> list:
    seen: list = []
    for m in _PLACEHOLDER.finditer(template or ""):
        if m.group(1) not in seen:
            seen.append(m.group(1))
    return seen


def normalize_phone(phone: Optional[str]) -> str:
    """
    E.164 digits without '+'. Local 10-digit DR numbers get the country
    code 1.
    """
    digits = digits_only(phone)
    if len(digits) == 10 and digits[:3] in DR_AREA_CODES:
        return "1" + digits
    return digits


def _http_post_json(url: str, payload: dict, token: str, timeout: int = 20) -> dict:
    req = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace") if hasattr(e, "read") else str(e)
        raise WhatsappError(f"WhatsApp HTTP {getattr(e, 'code', '?')}: {body}") from e
    except urllib.error.URLError as e:
        raise WhatsappError(f"WhatsApp unreachable: {e.reason}") from e


def send_text(phone: str, message: str) -> str:
    """Send a text message through the Cloud API; returns the provider message id."""
    if not settings.whatsapp_enabled:
        raise WhatsappError("WhatsApp not configured")
    url = f"{settings.whatsapp_api_url.rstrip('/')}/{settings.whatsapp_phone_number_id}/messages"
    res = _http_post_json(
        url,
        {
            "messaging_product": "whatsapp",
            "to": normalize_phone(phone),
            "type": "text",
            "text": {"body": message},
        },
        settings.whatsapp_api_token or "",
    )
    messages = res.get("messages") or []
    return (messages[0].get("id") if messages else "") or ""
