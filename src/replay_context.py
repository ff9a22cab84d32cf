"""Context building, ``${key}`` substitution and the shared anchor store."""

import json
import re
import warnings


PLACEHOLDER_RE = re.compile(r"\$\{([^}]+)\}")


class TemplateKeyWarning(UserWarning):
    """A ``${key}`` placeholder referenced a key absent from the context."""


def stringify(value) -> str:
    """Render a JSON-ish value the way it reads in a JSON document.

    Booleans become ``true``/``false``, ``None`` becomes ``null`` and integral
    floats drop their ``.0`` so ``1.0`` compares equal to ``"1"``.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def substitute(template, ctx: dict):
    """Replace every ``${key}`` in ``template`` with its context value.

    Non-string templates are returned unchanged. Missing keys (and ``None``
    values) render as an empty string; a missing key also emits a
    ``TemplateKeyWarning``.
    """
    if not isinstance(template, str):
        return template

    def repl(m: re.Match) -> str:
        key = m.group(1)
        if key not in ctx:
            warnings.warn(f"template key not found in context: ${{{key}}}", TemplateKeyWarning, stacklevel=3)
            return ""
        v = ctx[key]
        if v is None:
            return ""
        return stringify(v)

    return PLACEHOLDER_RE.sub(repl, template)


def deep_substitute(value, ctx: dict):
    if isinstance(value, str):
        return substitute(value, ctx)
    if isinstance(value, list):
        return [deep_substitute(v, ctx) for v in value]
    if isinstance(value, dict):
        return {k: deep_substitute(v, ctx) for k, v in value.items()}
    return value


def expected_text(expected, ctx: dict) -> str:
    """Substitute an expected value and render it for string comparison."""
    return stringify(deep_substitute(expected, ctx))


class AnchorStore:
    """The single mutable string->string map shared by a whole run.

    Writes are never rolled back. ``history`` keeps every write in order.
    """

    def __init__(self, seed: dict | None = None):
        self._values: dict[str, str] = {}
        self.history: list[tuple[str, str]] = []
        for k, v in (seed or {}).items():
            self._values[str(k)] = v if isinstance(v, str) else stringify(v)

    def get(self, key: str, default: str | None = None) -> str | None:
        return self._values.get(key, default)

    def set(self, key: str, value) -> str:
        text = value if isinstance(value, str) else stringify(value)
        self._values[str(key)] = text
        self.history.append((str(key), text))
        return text

    def has(self, key: str) -> bool:
        return key in self._values

    def as_dict(self) -> dict[str, str]:
        return dict(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"AnchorStore({self._values!r})"


def build_context(spec, anchors: AnchorStore) -> dict:
    """Flatten variables < env < anchors into one lookup. Later sources win."""
    ctx: dict = {}
    ctx.update(spec.variables or {})
    ctx.update(spec.env or {})
    ctx.update(anchors.as_dict())
    return ctx
