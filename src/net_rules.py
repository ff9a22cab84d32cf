"""Network must-rules: response matching, JSON expectations and anchor capture.

A ``NetworkRuleMatcher`` is attached to the page's response stream for the
whole lifetime of one spec. It records which rules were hit, keeps a short
tail of recent responses for debugging, and writes captured fields straight
into the shared ``AnchorStore``.
"""

import sys
from collections import deque
from dataclasses import dataclass
from functools import lru_cache

from jsonpath_ng.ext import parse as jsonpath_parse

from replay_context import expected_text, stringify, substitute
from replay_errors import ReplayAssertionError, SpecValidationError


RECENT_MAX = 50
FAILURE_TAIL = 20

_MISSING = object()


@lru_cache(maxsize=256)
def _compile(path: str):
    try:
        return jsonpath_parse(path)
    except Exception as e:
        raise SpecValidationError(f"invalid jsonpath {path!r}: {e}") from e


def jsonpath_find(document, path: str):
    """First value ``path`` selects in ``document``, or ``_MISSING`` when nothing matches.

    A matched JSON null comes back as ``None``.
    """
    if document is None:
        return _MISSING
    matches = _compile(str(path)).find(document)
    if not matches:
        return _MISSING
    return matches[0].value


def jsonpath_first(document, path: str):
    """Evaluate ``path`` against ``document``; first match or ``None``."""
    value = jsonpath_find(document, path)
    return None if value is _MISSING else value


def json_mismatch(body, expect_json: dict | None, expect_jsonpath: dict | None, ctx: dict) -> str | None:
    """Describe the first failed expectation, or ``None`` when all hold."""
    if expect_json:
        if not isinstance(body, dict):
            return "response json is not object"
        for key, raw in expect_json.items():
            expected = expected_text(raw, ctx)
            actual = body.get(key, _MISSING)
            if actual is _MISSING or expected != stringify(actual):
                shown = "undefined" if actual is _MISSING else stringify(actual)
                return f"expect_json mismatch key={key} expected={expected} actual={shown}"
    if expect_jsonpath:
        if not isinstance(body, (dict, list)):
            return "response json is not object"
        for path, raw in expect_jsonpath.items():
            expected = expected_text(raw, ctx)
            actual = jsonpath_find(body, path)
            if actual is _MISSING or expected != stringify(actual):
                shown = "undefined" if actual is _MISSING else stringify(actual)
                return f"expect_jsonpath mismatch path={path} expected={expected} actual={shown}"
    return None


@dataclass
class RecentResponse:
    method: str
    url: str
    status: int
    biz_code: str | None = None
    biz_message: str | None = None

    def line(self) -> str:
        biz = f" code={self.biz_code}" if self.biz_code is not None else ""
        return f"{self.method} {self.status}{biz} {self.url}"


@dataclass
class Hit:
    rule_index: int
    method: str
    url: str
    status: int


class NetworkRuleMatcher:
    def __init__(self, rules, anchors, ctx_getter, verbose: bool = False):
        self.rules = list(rules)
        self.anchors = anchors
        self.ctx_getter = ctx_getter
        self.verbose = verbose
        self.hits: dict[tuple, Hit] = {}
        self.recent: deque[RecentResponse] = deque(maxlen=RECENT_MAX)

    async def observe(self, response) -> None:
        recent = RecentResponse(method=response.method, url=response.url, status=response.status)
        if "application/json" in response.content_type:
            body = await response.json()
            if isinstance(body, dict):
                if body.get("code") is not None:
                    recent.biz_code = stringify(body["code"])
                if body.get("message") is not None:
                    recent.biz_message = stringify(body["message"])
        self.recent.append(recent)

        for idx, rule in enumerate(self.rules):
            ctx = self.ctx_getter()
            try:
                if not await self._matches(rule, response, ctx):
                    continue
            except SpecValidationError:
                continue
            url_sub = substitute(rule.url_contains, ctx) if rule.url_contains else None
            key = (idx, rule.method or "*", url_sub or "*", rule.status or "*", response.url)
            self.hits[key] = Hit(rule_index=idx, method=response.method, url=response.url, status=response.status)
            await self._capture(rule, response)

    async def _matches(self, rule, response, ctx: dict) -> bool:
        if rule.method and rule.method.upper() != str(response.method).upper():
            return False
        url_sub = substitute(rule.url_contains, ctx) if rule.url_contains else None
        if url_sub and url_sub not in response.url:
            return False
        if rule.status is not None and rule.status != response.status:
            return False
        if rule.expect_json or rule.expect_jsonpath:
            body = await response.json()
            if json_mismatch(body, rule.expect_json, rule.expect_jsonpath, ctx) is not None:
                return False
        return True

    async def _capture(self, rule, response) -> None:
        captures = rule.captures()
        if not captures:
            return
        body = await response.json()
        if body is None:
            return
        for key, path in captures.items():
            try:
                value = jsonpath_first(body, path)
            except SpecValidationError:
                continue
            if value is not None:
                text = self.anchors.set(key, value)
                if self.verbose:
                    print(f"⚓ Captured anchor {key}={text} from {response.url}", file=sys.stderr)

    def was_hit(self, rule_index: int) -> bool:
        return any(h.rule_index == rule_index for h in self.hits.values())

    def unmatched(self) -> list:
        return [rule for idx, rule in enumerate(self.rules) if not self.was_hit(idx)]

    def describe(self, rule) -> str:
        ctx = self.ctx_getter()
        url_sub = substitute(rule.url_contains, ctx) if rule.url_contains else "*"
        parts = [f"method={rule.method or '*'}", f"url_contains={url_sub}", f"status={rule.status or '*'}"]
        if rule.expect_json:
            parts.append(f"expect_json={stringify(rule.expect_json)}")
        if rule.expect_jsonpath:
            parts.append(f"expect_jsonpath={stringify(rule.expect_jsonpath)}")
        return " ".join(parts)

    def verify(self) -> None:
        missing = self.unmatched()
        if not missing:
            return
        lines = [f"Net check failed: missing request {self.describe(rule)}" for rule in missing]
        tail = list(self.recent)[-FAILURE_TAIL:]
        if tail:
            lines.append("Recent responses:")
            lines.extend(r.line() for r in tail)
        raise ReplayAssertionError("\n".join(lines))
