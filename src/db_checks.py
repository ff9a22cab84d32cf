"""Relational store access and retrying post-condition checks.

Named ``:identifier`` placeholders in spec SQL are rewritten to the driver's
positional form and bound from template-substituted ``params``.
"""

import asyncio
import re
import sys

from sqlalchemy import create_engine
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError

from replay_config import MySqlSettings
from replay_context import build_context, expected_text, stringify, substitute
from replay_errors import InfrastructureError, ReplayAssertionError, SpecValidationError


NAMED_PARAM_RE = re.compile(r"(?<![:\w]):([A-Za-z_][A-Za-z0-9_]*)")

NOT_NULL = "not_null"
NOT_EMPTY = "not_empty"

_MISSING = object()


def to_positional_sql(sql: str, params: dict | None, ctx: dict) -> tuple[str, list]:
    """Rewrite ``:name`` placeholders to ``%s`` and collect bound values in order."""
    params = params or {}
    names: list[str] = []

    def repl(m: re.Match) -> str:
        names.append(m.group(1))
        return "%s"

    # pyformat drivers treat a bare % as a format directive
    positional = NAMED_PARAM_RE.sub(repl, sql.replace("%", "%%"))
    values = []
    for name in names:
        if name not in params:
            raise SpecValidationError(f"sql placeholder :{name} has no entry in params")
        values.append(substitute(params[name], ctx))
    return positional, values


def _cell_text(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return stringify(value)


def assert_row(row: dict, assertions: dict, ctx: dict) -> None:
    for field, raw in (assertions or {}).items():
        expected = expected_text(raw, ctx)
        actual = row.get(field, _MISSING)
        if expected == NOT_NULL:
            if actual is _MISSING or actual is None:
                raise ReplayAssertionError(f"field {field} expected=not_null but was null")
        elif expected == NOT_EMPTY:
            if actual is _MISSING or actual is None or _cell_text(actual).strip() == "":
                raise ReplayAssertionError(f"field {field} expected=not_empty but was empty")
        else:
            shown = "undefined" if actual is _MISSING else _cell_text(actual)
            if actual is _MISSING or expected != shown:
                raise ReplayAssertionError(f"field {field} expected={expected} actual={shown}")


class Database:
    """SQLAlchemy engine over PyMySQL; blocking calls run in a worker thread."""

    def __init__(self, settings: MySqlSettings):
        self.settings = settings
        url = URL.create(
            "mysql+pymysql",
            username=settings.user,
            password=settings.password,
            host=settings.host,
            port=settings.port,
            database=settings.database,
            query={"charset": "utf8mb4"},
        )
        self.engine = create_engine(url, future=True, pool_pre_ping=True)

    def _execute(self, sql: str, values: list) -> list[dict]:
        with self.engine.begin() as conn:
            result = conn.exec_driver_sql(sql, tuple(values))
            if not result.returns_rows:
                return []
            return [dict(r._mapping) for r in result]

    async def execute(self, sql: str, values: list) -> list[dict]:
        try:
            return await asyncio.to_thread(self._execute, sql, values)
        except SQLAlchemyError as e:
            raise InfrastructureError(f"mysql error ({self.settings.describe()}): {e}") from e

    def close(self) -> None:
        self.engine.dispose()


class DatabasePool:
    """One ``Database`` per connection target for the whole run."""

    def __init__(self, factory=Database):
        self.factory = factory
        self._dbs: dict[MySqlSettings, object] = {}

    def get(self, settings: MySqlSettings):
        db = self._dbs.get(settings)
        if db is None:
            db = self.factory(settings)
            self._dbs[settings] = db
        return db

    def close(self) -> None:
        for db in self._dbs.values():
            try:
                db.close()
            except Exception:
                pass
        self._dbs.clear()


async def exec_statement(spec, anchors, pool: DatabasePool, sql: str, params: dict | None, environ=None) -> None:
    ctx = build_context(spec, anchors)
    db = pool.get(MySqlSettings.resolve(ctx, environ))
    positional, values = to_positional_sql(sql, params, ctx)
    await db.execute(positional, values)


async def run_db_checks(spec, anchors, pool: DatabasePool, artifacts, environ=None, verbose: bool = False) -> None:
    """Run every check with bounded, fixed-interval retry. No checks is a no-op."""
    if not spec.db_checks:
        return
    settings = MySqlSettings.resolve(build_context(spec, anchors), environ)
    db = pool.get(settings)

    for check in spec.db_checks:
        last_err = None
        for attempt in range(check.retry_attempts):
            try:
                ctx = build_context(spec, anchors)
                sql, values = to_positional_sql(check.sql, check.params, ctx)
                rows = await db.execute(sql, values)
                if not rows:
                    raise ReplayAssertionError("no rows returned")
                assert_row(rows[0], check.assertions, ctx)
                last_err = None
                break
            except (ReplayAssertionError, InfrastructureError) as e:
                last_err = e
                if verbose:
                    print(f"→ DB check {check.name or '?'} attempt {attempt + 1}/{check.retry_attempts}: {e}", file=sys.stderr)
                if attempt < check.retry_attempts - 1:
                    await asyncio.sleep(check.retry_interval_ms / 1000)

        if last_err is not None:
            artifacts.write_json("db-check-failed", {
                "message": str(last_err),
                "check": {
                    "name": check.name,
                    "sql": check.sql,
                    "params": check.params,
                    "assert": check.assertions,
                },
                "mysql": settings.target(),
                "anchors": anchors.as_dict(),
                "env": spec.env,
            })
            raise type(last_err)(
                f"DB check failed: {check.name} - {last_err} (mysql={settings.describe()})"
            ) from last_err
        if verbose:
            print(f"✓ DB check passed: {check.name}", file=sys.stderr)
