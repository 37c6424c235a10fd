import pytest

from posrd.app import whatsapp_api
from posrd.app.whatsapp_api import WhatsappError, normalize_phone, render_template, template_variables


def test_render_template_fills_known_placeholders():
    out = render_template("Hola {{customer_name}}, su pedido {{ order }} está listo", {"customer_name": "Ana", "order": 15})
    assert out == "Hola Ana, su pedido 15 está listo"


def test_render_template_leaves_unknown_and_none():
    assert render_template("{{a}} {{b}}", {"a": None}) == "{{a}} {{b}}"
    assert render_template("", {"a": 1}) == ""


def test_template_variables_are_unique_and_ordered():
    assert template_variables("{{b}} {{a}} {{b}} {{ c }}") == ["b", "a", "c"]


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("809-555-0101", "18095550101"),
        ("(829) 555 0103", "18295550103"),
        ("+1 849 555 0105", "18495550105"),
        ("3055550101", "3055550101"),
        (None, ""),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_send_text_requires_configuration(monkeypatch):
    monkeypatch.setattr(whatsapp_api.settings, "whatsapp_api_token", None)
    with pytest.raises(WhatsappError):
        whatsapp_api.send_text("8095550101", "hola")


def test_send_text_posts_to_cloud_api(monkeypatch):
    monkeypatch.setattr(whatsapp_api.settings, "whatsapp_api_token", "tok")
    monkeypatch.setattr(whatsapp_api.settings, "whatsapp_phone_number_id", "12345")
    monkeypatch.setattr(whatsapp_api.settings, "whatsapp_api_url", "https://graph.example/v19.0/")
    calls = []

    def fake_post(url, payload, token, timeout=20):
        calls.append((url, payload, token))
        return {"messages": [{"id": "wamid.X"}]}

    monkeypatch.setattr(whatsapp_api, "_http_post_json", fake_post)

    assert whatsapp_api.send_text("809-555-0101", "hola") == "wamid.X"
    url, payload, token = calls[0]
    assert url == "https://graph.example/v19.0/12345/messages"
    assert payload["to"] == "18095550101"
    assert payload["text"] == {"body": "hola"}
    assert token == "tok"
