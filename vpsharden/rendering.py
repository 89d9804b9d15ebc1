"""Template rendering for managed config files."""

from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

TEMPLATE_DIR = Path(__file__).parent / "templates"

_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    keep_trailing_newline=True,
    undefined=StrictUndefined,
)


def render(template_name: str, **context) -> str:
    """Render a template from vpsharden/templates."""
    return _env.get_template(template_name).render(**context)
