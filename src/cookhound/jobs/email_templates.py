from __future__ import annotations

from dataclasses import dataclass

from jinja2 import DictLoader, Environment, StrictUndefined, select_autoescape

from cookhound.context.request_context import DEFAULT_LOCALE, SUPPORTED_LOCALES

_LAYOUT = """<!doctype html>
<html lang="{{ locale }}">
<body style="font-family: sans-serif; color: #222;">
{% block body %}{% endblock %}
<p style="color: #888; font-size: 12px;">Cookhound</p>
</body>
</html>
"""

_SUBJECTS: dict[str, dict[str, str]] = {
    "email_verification": {
        "en": "Verify your email address",
        "cs": "Ověřte svou e-mailovou adresu",
    },
    "reset_password": {
        "en": "Reset your password",
        "cs": "Obnovení hesla",
    },
    "contact_form": {
        "en": "Contact form: {subject}",
        "cs": "Kontaktní formulář: {subject}",
    },
}

_BODIES: dict[str, str] = {
    "email_verification.en.html": """{% extends "layout.html" %}{% block body %}
<p>Hi {{ name }},</p>
<p>please confirm your email address by opening the link below.</p>
<p><a href="{{ link }}">Verify email</a></p>
{% endblock %}""",
    "email_verification.cs.html": """{% extends "layout.html" %}{% block body %}
<p>Dobrý den, {{ name }},</p>
<p>potvrďte prosím svou e-mailovou adresu kliknutím na odkaz níže.</p>
<p><a href="{{ link }}">Ověřit e-mail</a></p>
{% endblock %}""",
    "reset_password.en.html": """{% extends "layout.html" %}{% block body %}
<p>Hi {{ name }},</p>
<p>someone asked to reset the password of your account. If it was you, open the link below.</p>
<p><a href="{{ link }}">Reset password</a></p>
<p>If it was not you, ignore this email.</p>
{% endblock %}""",
    "reset_password.cs.html": """{% extends "layout.html" %}{% block body %}
<p>Dobrý den, {{ name }},</p>
<p>obdrželi jsme žádost o obnovení hesla k vašemu účtu. Pokud jste to byli vy, otevřete odkaz níže.</p>
<p><a href="{{ link }}">Obnovit heslo</a></p>
<p>Pokud jste o obnovení nežádali, tento e-mail ignorujte.</p>
{% endblock %}""",
    "contact_form.en.html": """{% extends "layout.html" %}{% block body %}
<p><strong>From:</strong> {{ name }} &lt;{{ email }}&gt;</p>
<p><strong>Subject:</strong> {{ subject }}</p>
<p style="white-space: pre-wrap;">{{ message }}</p>
{% endblock %}""",
    "contact_form.cs.html": """{% extends "layout.html" %}{% block body %}
<p><strong>Od:</strong> {{ name }} &lt;{{ email }}&gt;</p>
<p><strong>Předmět:</strong> {{ subject }}</p>
<p style="white-space: pre-wrap;">{{ message }}</p>
{% endblock %}""",
}

_env = Environment(
    loader=DictLoader({"layout.html": _LAYOUT, **_BODIES}),
    autoescape=select_autoescape(default=True, default_for_string=True),
    undefined=StrictUndefined,
)


@dataclass(frozen=True, slots=True)
class RenderedEmail:
    subject: str
    html: str


def _locale(locale: str | None) -> str:
    loc = str(locale or "").strip().lower()
    return loc if loc in SUPPORTED_LOCALES else DEFAULT_LOCALE


def render(template: str, locale: str | None, **params: str) -> RenderedEmail:
    """
    Render `template` ("email_verification", "reset_password", "contact_form") in `locale`.
    Unknown locales fall back to the default one. Values are HTML-escaped.
    """
    loc = _locale(locale)
    subject = _SUBJECTS[template][loc].format(**params)
    html = _env.get_template(f"{template}.{loc}.html").render(locale=loc, **params)
    return RenderedEmail(subject=subject, html=html)
