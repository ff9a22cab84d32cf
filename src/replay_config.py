"""Run configuration, database settings and device profiles."""

import os
import urllib.parse
from dataclasses import dataclass, field
from pathlib import Path

from replay_errors import ConfigurationError


MOBILE_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 15_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/15.0 Mobile/15E148 Safari/604.1"
)

MOBILE_CONTEXT = {
    "viewport": {"width": 390, "height": 844},
    "user_agent": MOBILE_USER_AGENT,
    "device_scale_factor": 3,
    "is_mobile": True,
    "has_touch": True,
}

DESKTOP_CONTEXT = {"viewport": {"width": 1366, "height": 900}}

MOBILE_FRAMEWORKS = ("uni-app",)


def _flag(environ, name: str, default: bool = False) -> bool:
    v = environ.get(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RunConfig:
    """Everything a run needs to know about its surroundings.

    Passed explicitly to each component; there is no process-wide run state.
    """

    spec_path: Path
    artifacts_dir: Path
    headless: bool = True
    force_mobile: bool = False
    verbose: bool = False
    allow_eval: bool = False
    default_settle_ms: int = 2000
    eval_settle_ms: int = 1000
    click_timeout_ms: int = 5000
    wait_timeout_ms: int = 15000
    environ: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_env(cls, spec_path, environ=None, **overrides) -> "RunConfig":
        environ = dict(os.environ if environ is None else environ)
        spec_path = Path(spec_path).resolve()
        artifacts = overrides.pop("artifacts_dir", None) or environ.get("REPLAY_ARTIFACTS_DIR")
        cfg = cls(
            spec_path=spec_path,
            artifacts_dir=resolve_artifacts_dir(spec_path, artifacts),
            headless=environ.get("HEADLESS", "1") != "0",
            force_mobile=_flag(environ, "MOBILE_EMULATION"),
            verbose=_flag(environ, "REPLAY_VERBOSE"),
            allow_eval=_flag(environ, "REPLAY_ALLOW_EVAL"),
            environ=environ,
        )
        for k, v in overrides.items():
            if v is not None:
                setattr(cfg, k, v)
        return cfg


def resolve_artifacts_dir(spec_path: Path | None, override=None) -> Path:
    if override:
        return Path(override).resolve()
    if spec_path:
        return (Path(spec_path).parent / ".." / "artifacts").resolve()
    return (Path.cwd() / "replay" / "artifacts").resolve()


def wants_mobile(spec, config: RunConfig) -> bool:
    meta = spec.metadata or {}
    if meta.get("mobile") is True or config.force_mobile:
        return True
    if meta.get("framework") in MOBILE_FRAMEWORKS:
        return True
    base_url = spec.base_url
    if base_url:
        path = urllib.parse.urlparse(str(base_url)).path
        if "h5" in [seg for seg in path.split("/") if seg]:
            return True
    return False


def context_options(mobile: bool) -> dict:
    return dict(MOBILE_CONTEXT if mobile else DESKTOP_CONTEXT)


@dataclass(frozen=True)
class MySqlSettings:
    host: str
    user: str
    password: str | None
    database: str
    port: int = 3306

    @classmethod
    def resolve(cls, ctx: dict, environ=None) -> "MySqlSettings":
        environ = os.environ if environ is None else environ

        def pick(name: str):
            for v in (ctx.get(name), ctx.get(name.lower()), environ.get(name)):
                if v not in (None, ""):
                    return str(v)
            return None

        host, user, database = pick("MYSQL_HOST"), pick("MYSQL_USER"), pick("MYSQL_DATABASE")
        if not host or not user or not database:
            raise ConfigurationError(
                "Missing MySQL env. Required: MYSQL_HOST, MYSQL_USER, MYSQL_DATABASE (and MYSQL_PASSWORD if needed)"
            )
        port_raw = pick("MYSQL_PORT")
        try:
            port = int(port_raw) if port_raw else 3306
        except ValueError:
            raise ConfigurationError(f"MYSQL_PORT must be an integer, got {port_raw!r}") from None
        return cls(host=host, user=user, password=pick("MYSQL_PASSWORD"), database=database, port=port)

    def target(self) -> dict:
        """Connection target without the password, for diagnostics."""
        return {"host": self.host, "port": self.port, "database": self.database, "user": self.user}

    def describe(self) -> str:
        return f"{self.host}:{self.port}/{self.database}"
