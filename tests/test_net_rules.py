from __future__ import annotations

import asyncio

import pytest

from fakes import json_response
from net_rules import _MISSING, RECENT_MAX, NetworkRuleMatcher, json_mismatch, jsonpath_find, jsonpath_first
from page_actions import ObservedResponse
from replay_context import AnchorStore
from replay_errors import ReplayAssertionError
from replay_spec import NetRule


def _matcher(rules: list[dict], anchors: AnchorStore | None = None, ctx: dict | None = None) -> NetworkRuleMatcher:
    anchors = anchors if anchors is not None else AnchorStore()
    return NetworkRuleMatcher([NetRule.from_dict(r) for r in rules], anchors, lambda: {**(ctx or {}), **anchors.as_dict()})


def _feed(matcher: NetworkRuleMatcher, *responses) -> None:
    async def go():
        for r in responses:
            await matcher.observe(r)

    asyncio.run(go())


LOGIN_RULE = {"method": "POST", "url_contains": "/login", "status": 200}


def test_rule_hit_requires_method_url_and_status() -> None:
    m = _matcher([LOGIN_RULE])
    _feed(
        m,
        json_response("GET", "https://app/api/login", 200, {}),
        json_response("POST", "https://app/api/logout", 200, {}),
        json_response("POST", "https://app/api/login", 500, {}),
    )
    assert m.unmatched()
    _feed(m, json_response("post", "https://app/api/login?x=1", 200, {}))
    assert m.unmatched() == []
    m.verify()


def test_unmatched_rule_reports_shape_and_last_twenty_responses() -> None:
    m = _matcher([LOGIN_RULE])
    _feed(m, *[json_response("GET", f"https://app/api/item/{i}", 200, {"code": 0}) for i in range(30)])
    with pytest.raises(ReplayAssertionError) as exc:
        m.verify()
    msg = str(exc.value)
    assert "method=POST url_contains=/login status=200" in msg
    assert "Recent responses:" in msg
    assert "GET 200 code=0 https://app/api/item/29" in msg
    lines = msg.splitlines()
    tail = [line.split()[-1] for line in lines[lines.index("Recent responses:") + 1 :]]
    assert tail == [f"https://app/api/item/{i}" for i in range(10, 30)]


def test_recent_buffer_is_bounded() -> None:
    m = _matcher([])
    _feed(m, *[json_response("GET", f"https://app/{i}", 200, {}) for i in range(RECENT_MAX + 25)])
    assert len(m.recent) == RECENT_MAX
    assert m.recent[0].url == "https://app/25"


def test_url_contains_is_substituted_from_live_context() -> None:
    anchors = AnchorStore()
    m = _matcher([{"url_contains": "/orders/${order_id}"}], anchors)
    _feed(m, json_response("GET", "https://app/carts/77", 200, {}))
    assert m.unmatched()
    anchors.set("order_id", "77")
    _feed(m, json_response("GET", "https://app/orders/12", 200, {}))
    assert m.unmatched()
    _feed(m, json_response("GET", "https://app/orders/77", 200, {}))
    assert m.unmatched() == []


def test_expect_json_and_jsonpath_gate_the_match() -> None:
    m = _matcher(
        [{"url_contains": "/save", "expect_json": {"code": "${ok_code}"}, "expect_jsonpath": {"$.data.state": "done"}}],
        ctx={"ok_code": "0"},
    )
    _feed(m, json_response("POST", "https://app/save", 200, {"code": 1, "data": {"state": "done"}}))
    _feed(m, json_response("POST", "https://app/save", 200, {"code": 0, "data": {"state": "pending"}}))
    assert m.unmatched()
    _feed(m, json_response("POST", "https://app/save", 200, {"code": 0, "data": {"state": "done"}}))
    assert m.unmatched() == []


def test_unparseable_body_does_not_break_observer() -> None:
    m = _matcher([{"url_contains": "/x", "expect_json": {"a": "1"}}, {"url_contains": "/x"}])
    _feed(m, json_response("GET", "https://app/x", 200, None))
    assert len(m.unmatched()) == 1
    assert len(m.recent) == 1


def test_matching_rule_captures_single_and_batch_anchors() -> None:
    anchors = AnchorStore()
    m = _matcher(
        [
            {"url_contains": "/create", "anchor": {"key": "order_id", "jsonpath": "$.data.id"}},
            {"url_contains": "/create", "capture_anchors": {"order_no": "$.data.no", "ghost": "$.data.missing"}},
        ],
        anchors,
    )
    _feed(m, json_response("POST", "https://app/create", 200, {"data": {"id": 9001, "no": "A-1"}}))
    assert anchors.get("order_id") == "9001"
    assert anchors.get("order_no") == "A-1"
    assert not anchors.has("ghost")


def test_non_json_responses_are_still_recorded() -> None:
    m = _matcher([{"url_contains": "/page"}])
    _feed(m, ObservedResponse(method="GET", url="https://app/page", status=200, headers={"content-type": "text/html"}))
    assert m.unmatched() == []
    assert m.recent[-1].biz_code is None


def test_jsonpath_first_returns_first_match_or_none() -> None:
    doc = {"items": [{"id": 1}, {"id": 2}]}
    assert jsonpath_first(doc, "$.items[*].id") == 1
    assert jsonpath_first(doc, "$.nope") is None
    assert jsonpath_first(None, "$.a") is None


def test_json_mismatch_messages() -> None:
    assert json_mismatch({"a": 1}, {"a": "1"}, None, {}) is None
    assert json_mismatch([], {"a": "1"}, None, {}) == "response json is not object"
    assert "key=a expected=2 actual=1" in json_mismatch({"a": 1}, {"a": 2}, None, {})
    assert "path=$.b" in json_mismatch({"a": 1}, None, {"$.b": "x"}, {})


def test_one_response_satisfies_gate_and_capture_rules_together() -> None:
    anchors = AnchorStore()
    m = _matcher(
        [
            {**LOGIN_RULE, "expect_json": {"code": "0"}},
            {**LOGIN_RULE, "anchor": {"key": "tok", "jsonpath": "$.data.token"}},
        ],
        anchors,
    )
    _feed(m, json_response("POST", "https://app/api/login", 200, {"code": 0, "data": {"token": "t-1"}}))
    assert anchors.get("tok") == "t-1"
    assert m.was_hit(0) and m.was_hit(1)
    assert m.unmatched() == []
    m.verify()


def test_expect_jsonpath_matches_explicit_null() -> None:
    m = _matcher([{"url_contains": "/x", "expect_jsonpath": {"$.data.err": "null"}}])
    _feed(m, json_response("GET", "https://app/x", 200, {"data": {"ok": 1}}))
    assert m.unmatched()
    _feed(m, json_response("GET", "https://app/x", 200, {"data": {"err": None}}))
    assert m.unmatched() == []


@pytest.mark.parametrize("body", [None, "plain", 7])
def test_expect_jsonpath_rejects_non_container_body(body) -> None:
    assert json_mismatch(body, None, {"$.a": "1"}, {}) == "response json is not object"
    m = _matcher([{"url_contains": "/x", "expect_jsonpath": {"$.a": "1"}}])
    _feed(m, json_response("GET", "https://app/x", 200, body))
    assert m.unmatched()


def test_jsonpath_find_separates_null_from_absent() -> None:
    doc = {"data": {"err": None}}
    assert jsonpath_find(doc, "$.data.err") is None
    assert jsonpath_find(doc, "$.data.nope") is _MISSING
    assert jsonpath_find(None, "$.data") is _MISSING
    assert json_mismatch(doc, None, {"$.data.nope": "null"}, {}) == (
        "expect_jsonpath mismatch path=$.data.nope expected=null actual=undefined"
    )
