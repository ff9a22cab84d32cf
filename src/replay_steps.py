"""Step dispatcher: one handler per ``Op``, run strictly in declared order."""

import random
import re
import sys
import time
import urllib.parse
from datetime import datetime, timezone

import pyotp

from db_checks import exec_statement
from net_rules import json_mismatch, jsonpath_first
from page_actions import UNI_INPUT, UNI_TEXTAREA, ClickTimeout
from replay_artifacts import artifact_timestamp
from replay_context import build_context, deep_substitute, stringify, substitute
from replay_errors import (
    ConfigurationError,
    ReplayAssertionError,
    SpecValidationError,
    step_label,
)
from replay_spec import NetRule, Op, spec_int


ABSOLUTE_URL_RE = re.compile(r"^https?://", re.I)

# 2**53 - 1; ids above this lose precision in a JS Number().
MAX_SAFE_INTEGER = 9007199254740991


class MonotonicIdSource:
    """Numeric-string ids: epoch millis * 1000 + 3 random digits.

    Values stay near 1.7e15, well under 2**53. Ids never repeat within a
    process even when drawn in the same millisecond.
    """

    def __init__(self, clock=time.time, rng=None):
        self.clock = clock
        self.rng = rng or random.Random()
        self._last = 0

    def next(self) -> str:
        ms = int(self.clock() * 1000)
        value = ms * 1000 + self.rng.randrange(1000)
        if value <= self._last:
            value = self._last + 1
        self._last = value
        return str(value)


def gen_timestamp(now: datetime | None = None) -> str:
    return artifact_timestamp(now or datetime.now(timezone.utc))


def absolutize_url(url: str, ctx: dict) -> str:
    """Resolve a path-absolute URL against ``api_origin`` or ``base_url``."""
    if not url or ABSOLUTE_URL_RE.match(url) or not url.startswith("/"):
        return url
    api_origin = ctx.get("api_origin") or ctx.get("API_ORIGIN")
    if api_origin and ABSOLUTE_URL_RE.match(str(api_origin)):
        return str(api_origin).rstrip("/") + url
    base_url = ctx.get("base_url") or ctx.get("BASE_URL")
    if base_url and ABSOLUTE_URL_RE.match(str(base_url)):
        parsed = urllib.parse.urlparse(str(base_url))
        return f"{parsed.scheme}://{parsed.netloc}{url}"
    return url


def is_dom_click_selector(selector: str) -> bool:
    """Mobile framework components swallow synthetic pointer events."""
    return selector.startswith("uni-") or "uni-button" in selector or "uni-view" in selector


def is_uni_input(selector: str) -> bool:
    return "uni-input" in selector or ".uni-input-input" in selector


def is_uni_textarea(selector: str) -> bool:
    return "uni-textarea" in selector or ".uni-textarea-textarea" in selector


HANDLERS: dict = {}


def handles(op: Op):
    def register(fn):
        HANDLERS[op] = fn
        return fn
    return register


def _require(step, key: str, value, what: str | None = None):
    if value is None or value == "":
        raise SpecValidationError(f"{step.op} requires {what or key}. {step_label(step)}")
    return value


class StepRunner:
    def __init__(self, spec, anchors, actions, pool, artifacts, config, id_source: MonotonicIdSource | None = None):
        self.spec = spec
        self.anchors = anchors
        self.actions = actions
        self.pool = pool
        self.artifacts = artifacts
        self.config = config
        self.id_source = id_source or DEFAULT_ID_SOURCE

    def context(self) -> dict:
        return build_context(self.spec, self.anchors)

    def log(self, msg: str) -> None:
        if self.config.verbose:
            print(msg, file=sys.stderr)

    async def run_all(self) -> None:
        for idx, step in enumerate(self.spec.steps, start=1):
            if not step.op:
                self.log(f"↷ Skipping step {idx} without op: {step.name}")
                continue
            await self.run_step(step, idx)

    async def run_step(self, step, idx: int = 0) -> None:
        op = step.resolve_op()
        handler = HANDLERS.get(op)
        if handler is None:
            raise SpecValidationError(f"Unknown op: {step.op}. {step_label(step)}")
        self.log(f"→ [{idx}] {op.value} {step.name}")
        await handler(self, step, step.args, self.context())

    # util
    @handles(Op.UTIL_GEN_ID)
    async def _gen_id(self, step, args, ctx):
        key = _require(step, "key", args.get("key"))
        self.anchors.set(key, self.id_source.next())

    @handles(Op.UTIL_GEN_TS)
    async def _gen_ts(self, step, args, ctx):
        key = _require(step, "key", args.get("key"))
        self.anchors.set(key, gen_timestamp())

    @handles(Op.UTIL_TOTP)
    async def _totp(self, step, args, ctx):
        key = _require(step, "key", args.get("key"))
        secret = _require(step, "secret", substitute(args.get("secret"), ctx))
        try:
            code = pyotp.TOTP(str(secret).replace(" ", "")).now()
        except (ValueError, TypeError) as e:
            raise SpecValidationError(f"util.totp secret is not valid base32: {e}. {step_label(step)}") from e
        self.anchors.set(key, code)

    # ui navigation
    @handles(Op.UI_GOTO)
    async def _goto(self, step, args, ctx):
        url = _require(step, "url", substitute(args.get("url"), ctx))
        await self.actions.goto(url)

    @handles(Op.UI_HASH_NAVIGATE)
    async def _hash_navigate(self, step, args, ctx):
        hash_value = _require(step, "hash", substitute(args.get("hash"), ctx))
        await self.actions.set_hash(hash_value)
        await self.actions.wait_ms(int(args.get("wait_ms") or self.config.default_settle_ms))

    @handles(Op.UI_EVAL)
    async def _eval(self, step, args, ctx):
        if not self.config.allow_eval:
            raise ConfigurationError(
                f"ui.eval is disabled; enable page script execution with --allow-eval or REPLAY_ALLOW_EVAL=1. {step_label(step)}"
            )
        code = _require(step, "code", substitute(args.get("code"), ctx))
        await self.actions.run_script(code)
        await self.actions.wait_ms(int(args.get("wait_ms") or self.config.eval_settle_ms))

    @handles(Op.UI_PICKER_SELECT)
    async def _picker_select(self, step, args, ctx):
        index = int(args.get("index") or 0)
        if not await self.actions.picker_select(index):
            raise ReplayAssertionError(f"ui.picker_select found no picker component. {step_label(step)}")
        await self.actions.wait_ms(int(args.get("wait_ms") or self.config.eval_settle_ms))

    # ui pointer
    async def _dom_click(self, step, selector: str) -> None:
        if not await self.actions.dom_click(selector):
            raise ReplayAssertionError(f"ui.click element not found: {selector}. {step_label(step)}")

    @handles(Op.UI_CLICK)
    async def _click(self, step, args, ctx):
        if args.get("selector"):
            selector = substitute(args["selector"], ctx)
            if args.get("use_eval") is True or is_dom_click_selector(selector):
                await self._dom_click(step, selector)
                return
            timeout = int(args.get("timeout_ms") or self.config.click_timeout_ms)
            try:
                await self.actions.click(selector, timeout)
            except ClickTimeout:
                print(f"→ click timeout, falling back to DOM click: {selector}", file=sys.stderr)
                await self._dom_click(step, selector)
        elif args.get("role") and args.get("name"):
            await self.actions.click_role(args["role"], substitute(args["name"], ctx))
        else:
            raise SpecValidationError(f"ui.click requires selector or role+name. {step_label(step)}")

    @handles(Op.UI_CLICK_TEXT)
    async def _click_text(self, step, args, ctx):
        text = _require(step, "text", substitute(args.get("text"), ctx))
        exact = bool(args["exact"]) if args.get("exact") is not None else True
        await self.actions.click_text(text, exact)

    # ui inputs
    @handles(Op.UI_FILL)
    async def _fill(self, step, args, ctx):
        raw = substitute(args.get("value"), ctx)
        value = "" if raw is None else stringify(raw)
        index = args.get("index")
        if args.get("selector"):
            selector = substitute(args["selector"], ctx)
            if args.get("use_eval") is True or is_uni_input(selector):
                if index is not None:
                    await self._fill_nth(step, int(index), value)
                else:
                    await self.actions.fill(selector, value)
            elif is_uni_textarea(selector):
                await self.actions.fill_first(UNI_TEXTAREA, value)
            else:
                await self.actions.fill(selector, value)
        elif args.get("label"):
            await self.actions.fill_label(substitute(args["label"], ctx), value)
        elif index is not None:
            await self._fill_nth(step, int(index), value)
        elif args.get("textarea") is True:
            await self.actions.fill_first(UNI_TEXTAREA, value)
        else:
            raise SpecValidationError(f"ui.fill requires selector, label, index, or textarea. {step_label(step)}")

    async def _fill_nth(self, step, index: int, value: str) -> None:
        if not await self.actions.fill_nth(UNI_INPUT, index, value):
            raise SpecValidationError(f"ui.fill: input index {index} not found. {step_label(step)}")

    @handles(Op.UI_FILL_FORM)
    async def _fill_form(self, step, args, ctx):
        selector = _require(step, "selector", substitute(args.get("selector"), ctx))
        if args.get("value") is None:
            raise SpecValidationError(f"ui.fill_form requires value. {step_label(step)}")
        value = stringify(substitute(args["value"], ctx))
        timeout = int(args.get("timeout_ms") or self.config.wait_timeout_ms)
        await self.actions.wait_selector(selector, "visible", timeout)
        await self.actions.fill(selector, value)

    # ui waits and checks
    @handles(Op.UI_WAIT_TEXT)
    async def _wait_text(self, step, args, ctx):
        text = _require(step, "text", substitute(args.get("text"), ctx))
        exact = bool(args.get("exact") or False)
        timeout = int(args.get("timeout_ms") or self.config.wait_timeout_ms)
        await self.actions.wait_text(text, exact, timeout)

    @handles(Op.UI_WAIT_SELECTOR)
    async def _wait_selector(self, step, args, ctx):
        selector = _require(step, "selector", substitute(args.get("selector"), ctx))
        state = str(args.get("state") or "visible")
        timeout = int(args.get("timeout_ms") or self.config.wait_timeout_ms)
        await self.actions.wait_selector(selector, state, timeout)

    @handles(Op.UI_WAIT_MS)
    async def _wait_ms(self, step, args, ctx):
        await self.actions.wait_ms(int(args.get("ms") or 500))

    @handles(Op.UI_VERIFY_URL_CONTAINS)
    async def _verify_url_contains(self, step, args, ctx):
        expected = _require(step, "url_contains", substitute(args.get("url_contains"), ctx))
        current = self.actions.current_url()
        if expected not in current:
            raise ReplayAssertionError(f"URL '{current}' does not contain '{expected}'. {step_label(step)}")

    @handles(Op.UI_SCREENSHOT)
    async def _screenshot(self, step, args, ctx):
        label = substitute(args.get("name"), ctx) or step.name or "screenshot"
        path = await self.artifacts.screenshot(self.actions, label)
        if path:
            self.log(f"📸 Screenshot saved: {path.name}")

    # net
    @handles(Op.NET_CALL)
    async def _net_call(self, step, args, ctx):
        _require(step, "url", args.get("url"))
        method = str(args.get("method") or "GET").upper()
        url = absolutize_url(substitute(args["url"], ctx), ctx)
        headers = {str(k): stringify(v) for k, v in deep_substitute(args.get("headers") or {}, ctx).items()}
        if not any(k.lower() == "authorization" for k in headers):
            token = await self.actions.local_storage(str(args.get("token_key") or "token"))
            if token:
                headers["Authorization"] = f"Bearer {token}"
        json_body = deep_substitute(args["json"], ctx) if "json" in args else None
        form_body = deep_substitute(args["form"], ctx) if "form" in args else None
        expected_status = spec_int(args.get("status"), "status", step_label(step))

        try:
            res = await self.actions.fetch(url, method, headers, json_body=json_body, form=form_body)
            if expected_status is not None and res.status != expected_status:
                raise ReplayAssertionError(f"status mismatch expected={expected_status} actual={res.status}")
            mismatch = json_mismatch(res.body, args.get("expect_json"), args.get("expect_jsonpath"), ctx)
            if mismatch:
                raise ReplayAssertionError(mismatch)
            anchored = {}
            for key, path in NetRule.from_dict(args).captures().items():
                if res.body is None:
                    raise ReplayAssertionError("anchor requires json response")
                value = jsonpath_first(res.body, path)
                if value is None:
                    raise ReplayAssertionError(f"anchor jsonpath not found: {path}")
                anchored[key] = {"value": self.anchors.set(key, value), "jsonpath": path}
            self.artifacts.write_json("net-call", {
                "step": step.name,
                "method": method,
                "url": url,
                "status": res.status,
                "expect_status": expected_status,
                "request": {"has_json": json_body is not None, "has_form": form_body is not None},
                "anchored": anchored or None,
                "body": res.body,
            })
        except SpecValidationError:
            raise
        except Exception as e:
            req = args.get("require")
            if isinstance(req, dict):
                msg = substitute(req["message"], ctx) if req.get("message") else "prerequisite not satisfied"
                need = f" need_unit={req['need_unit']}" if req.get("need_unit") else ""
                raise ReplayAssertionError(
                    f"Requirement failed: {msg}{need}. {step_label(step)}. url={url} err={e}"
                ) from e
            raise ReplayAssertionError(f"net.call failed: {step_label(step)} url={url} err={e}") from e

    # db
    @handles(Op.DB_EXEC)
    async def _db_exec(self, step, args, ctx):
        sql = _require(step, "sql", args.get("sql"))
        await exec_statement(self.spec, self.anchors, self.pool, sql, args.get("params"), self.config.environ)


DEFAULT_ID_SOURCE = MonotonicIdSource()
