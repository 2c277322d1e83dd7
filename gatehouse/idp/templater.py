"""
HTML pages for the consent screen and browser-facing errors.
"""

from pathlib import Path
from typing import List

from jinja2 import Environment, FileSystemLoader

_template_dir = Path(__file__).parent / "templates"
_env = Environment(
    loader=FileSystemLoader(_template_dir),
    autoescape=True,
)


def consent_page(
    client_id: str,
    redirect_uri: str,
    state: str = "",
    scope: str = "",
    app_name: str = "",
    app_description: str = "",
    user_name: str = "",
    scopes: List[str] = None,
    code_challenge: str = "",
    code_challenge_method: str = "",
    nonce: str = "",
    authorize_url: str = "/oauth/authorize",
) -> str:
    """Generate the consent page HTML."""
    template = _env.get_template("consent.jinja2")
    return template.render(
        client_id=client_id,
        redirect_uri=redirect_uri,
        state=state,
        scope=scope,
        app_name=app_name,
        app_description=app_description,
        user_name=user_name,
        scopes=scopes or [],
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        nonce=nonce,
        authorize_url=authorize_url,
    )


def error_page(error: str, error_description: str = "") -> str:
    """Generate an error page HTML."""
    template = _env.get_template("error.jinja2")
    return template.render(
        error=error,
        error_description=error_description,
    )
