from __future__ import annotations

import os
import re
import tempfile
from importlib import resources
from pathlib import Path
from typing import List, Mapping, Optional

from .errors import ValidationError

PLACEHOLDER_RE = re.compile(r"\{\{([A-Z0-9_]+)\}\}")


def render(template: str, context: Mapping[str, object]) -> str:
    """Substitute ``{{NAME}}`` tokens; tokens without a context entry are left as-is."""

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key not in context:
            return match.group(0)
        value = context[key]
        return "" if value is None else str(value)

    return PLACEHOLDER_RE.sub(_sub, template)


def unresolved_placeholders(text: str) -> List[str]:
    return sorted(set(PLACEHOLDER_RE.findall(text)))


def write_rendered(path: Path, text: str, mode: Optional[int] = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)


class TemplateStore:
    """Looks up template variants, operator directory first, bundled copies second."""

    def __init__(self, templates_path: Optional[Path]) -> None:
        self._templates_path = templates_path

    def load(self, variant: str) -> str:
        if self._templates_path is not None:
            candidate = self._templates_path / variant
            if candidate.is_file():
                return candidate.read_text(encoding="utf-8")

        bundled = resources.files("hpanel_core").joinpath("templates", *variant.split("/"))
        if not bundled.is_file():
            raise ValidationError(f"Unknown template variant: {variant}")
        return bundled.read_text(encoding="utf-8")
