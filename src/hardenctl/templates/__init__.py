"""Jinja2 template rendering for files hardenctl writes to the host.

Built-in templates ship inside this package. Operators can shadow any of them
by placing a file with the same relative name under ``templates_dir`` (for
example ``/etc/hardenctl/templates/fail2ban/jail.local.j2``).
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateNotFound,
)

BUILTIN_PACKAGE = "hardenctl"
BUILTIN_PATH = "templates"


class TemplateError(RuntimeError):
    """Raised when a template cannot be found or rendered."""


class TemplateEngine:
    """Render built-in and operator-supplied templates."""

    def __init__(self, environment: Environment) -> None:
        """Wrap a configured Jinja2 *environment*."""
        self._env = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that consults *override_dir* before the built-ins."""
        loaders = []
        if override_dir is not None and override_dir.is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader(BUILTIN_PACKAGE, BUILTIN_PATH))
        env = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,  # noqa: S701 - renders config files, not HTML
        )
        return cls(env)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self._env.get_template(name)
        except TemplateNotFound as exc:
            raise TemplateError(f"Template {name} not found.") from exc
        return template.render(**dict(context))

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* to *destination*; return ``True`` when content changed.

        The file is replaced atomically and always ends with *mode*.
        """
        rendered = self.render_to_string(name, context)
        if destination.exists() and destination.read_text(encoding="utf-8") == rendered:
            if (destination.stat().st_mode & 0o777) != mode:
                destination.chmod(mode)
            return False
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", dir=destination.parent)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(rendered)
            tmp_path.chmod(mode)
            os.replace(tmp_path, destination)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


__all__ = ["TemplateEngine", "TemplateError"]
