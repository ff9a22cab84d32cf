"""Best-effort diagnostic artifacts. Nothing in here ever raises."""

import json
import re
import sys
from datetime import datetime, timezone
from pathlib import Path


def sanitize_label(label: str, fallback: str = "artifact") -> str:
    return re.sub(r"[^a-zA-Z0-9._-]", "_", str(label or fallback))


def artifact_timestamp(now: datetime | None = None) -> str:
    """ISO-8601 UTC time with ':' and '.' swapped for '-' (filesystem safe)."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"


class ArtifactWriter:
    def __init__(self, directory: Path, verbose: bool = False):
        self.directory = Path(directory)
        self.verbose = verbose

    def _base(self, label: str, fallback: str) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory / f"{artifact_timestamp()}-{sanitize_label(label, fallback)}"

    @staticmethod
    def _with_ext(base: Path, ext: str) -> Path:
        return base.parent / f"{base.name}.{ext}"

    def write_json(self, label: str, payload) -> Path | None:
        try:
            path = self._with_ext(self._base(label, "artifact"), "json")
            path.write_text(json.dumps(payload, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
            return path
        except Exception as e:
            if self.verbose:
                print(f"⚠️ Could not write artifact {label}: {e}", file=sys.stderr)
            return None

    async def screenshot(self, actions, label: str) -> Path | None:
        try:
            path = self._with_ext(self._base(label, "screenshot"), "png")
            await actions.screenshot(path)
            return path
        except Exception as e:
            if self.verbose:
                print(f"⚠️ Could not save screenshot {label}: {e}", file=sys.stderr)
            return None

    async def capture_page(self, actions, label: str) -> Path | None:
        """Save url/title json, full html and a full-page screenshot."""
        try:
            base = self._base(label, "failure")
        except Exception:
            return None
        info = {"url": None, "title": None}
        try:
            info["url"] = actions.current_url()
        except Exception:
            pass
        try:
            info["title"] = await actions.title()
        except Exception:
            pass
        try:
            self._with_ext(base, "json").write_text(json.dumps(info, indent=2, ensure_ascii=False), encoding="utf-8")
        except Exception:
            pass
        try:
            html = await actions.content()
            if html:
                self._with_ext(base, "html").write_text(html, encoding="utf-8")
        except Exception:
            pass
        try:
            await actions.screenshot(self._with_ext(base, "png"))
        except Exception:
            pass
        if self.verbose:
            print(f"📸 Failure artifacts saved: {base}.*", file=sys.stderr)
        return base
