"""Browser capability used by the step dispatcher.

``PlaywrightActions`` is the only place that talks to Playwright. Everything
above it sees plain coroutines and ``ObservedResponse`` records, which keeps
the dispatcher testable with an in-memory fake.
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from replay_config import context_options
from replay_errors import InfrastructureError


# Components from the uni-app mobile framework wrap the real input/textarea.
UNI_INPUT = "input.uni-input-input"
UNI_TEXTAREA = "textarea.uni-textarea-textarea"

DOM_CLICK_JS = "(sel) => { const el = document.querySelector(sel); if (el) { el.click(); return true } return false }"
SET_HASH_JS = "(h) => { window.location.hash = h }"
RUN_CODE_JS = "(c) => new Function(c)()"
LOCAL_STORAGE_JS = "(k) => { try { return localStorage.getItem(k) || '' } catch (e) { return '' } }"
PICKER_SELECT_JS = """
(idx) => {
    const pickers = document.querySelectorAll('uni-picker')
    if (pickers.length === 0) return false
    const picker = pickers[idx] || pickers[0]
    picker.dispatchEvent(new CustomEvent('change', { detail: { value: idx }, bubbles: true }))
    return true
}
"""


class ClickTimeout(Exception):
    """A standard pointer click did not complete in time."""


@dataclass
class ObservedResponse:
    method: str
    url: str
    status: int
    headers: dict = field(default_factory=dict)
    body_loader: object = None
    _body: object = None
    _loaded: bool = False

    @property
    def content_type(self) -> str:
        return str((self.headers or {}).get("content-type", ""))

    async def json(self):
        """Parsed JSON body, or ``None`` when it is missing or not JSON."""
        if not self._loaded:
            self._loaded = True
            if self.body_loader is not None:
                try:
                    self._body = await self.body_loader()
                except Exception:
                    self._body = None
        return self._body

    @classmethod
    def from_playwright(cls, response) -> "ObservedResponse":
        return cls(
            method=response.request.method,
            url=response.url,
            status=response.status,
            headers=dict(response.headers or {}),
            body_loader=response.json,
        )


@dataclass
class FetchResult:
    status: int
    headers: dict
    body: object = None


class PlaywrightActions:
    def __init__(self, page, verbose: bool = False):
        self.page = page
        self.verbose = verbose
        self._pending: set[asyncio.Task] = set()

    # navigation
    async def goto(self, url: str) -> None:
        await self.page.goto(url, wait_until="domcontentloaded")

    async def set_hash(self, hash_value: str) -> None:
        await self.page.evaluate(SET_HASH_JS, hash_value)

    async def run_script(self, code: str):
        return await self.page.evaluate(RUN_CODE_JS, code)

    async def picker_select(self, index: int) -> bool:
        return bool(await self.page.evaluate(PICKER_SELECT_JS, index))

    # pointer
    async def dom_click(self, selector: str) -> bool:
        return bool(await self.page.evaluate(DOM_CLICK_JS, selector))

    async def click(self, selector: str, timeout_ms: int) -> None:
        try:
            await self.page.locator(selector).click(timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise ClickTimeout(str(e)) from e

    async def click_role(self, role: str, name: str) -> None:
        await self.page.get_by_role(role, name=name).click()

    async def click_text(self, text: str, exact: bool) -> None:
        await self.page.get_by_text(text, exact=exact).click()

    # inputs
    async def fill(self, selector: str, value: str) -> None:
        await self.page.locator(selector).fill(value)

    async def fill_first(self, selector: str, value: str) -> None:
        await self.page.locator(selector).first.fill(value)

    async def fill_nth(self, selector: str, index: int, value: str) -> bool:
        inputs = await self.page.locator(selector).all()
        if index < 0 or index >= len(inputs):
            return False
        await inputs[index].fill(value)
        return True

    async def fill_label(self, label: str, value: str) -> None:
        await self.page.get_by_label(label).fill(value)

    # waits
    async def wait_text(self, text: str, exact: bool, timeout_ms: int) -> None:
        await self.page.get_by_text(text, exact=exact).first.wait_for(timeout=timeout_ms)

    async def wait_selector(self, selector: str, state: str, timeout_ms: int) -> None:
        await self.page.locator(selector).first.wait_for(state=state, timeout=timeout_ms)

    async def wait_ms(self, ms: int) -> None:
        await self.page.wait_for_timeout(ms)

    # page state
    def current_url(self) -> str:
        return self.page.url

    async def title(self) -> str:
        return await self.page.title()

    async def content(self) -> str:
        return await self.page.content()

    async def screenshot(self, path) -> None:
        await self.page.screenshot(path=str(path), full_page=True)

    async def local_storage(self, key: str) -> str:
        try:
            return await self.page.evaluate(LOCAL_STORAGE_JS, key) or ""
        except PlaywrightError:
            return ""

    # network
    async def fetch(self, url: str, method: str, headers: dict, json_body=None, form=None) -> FetchResult:
        kwargs = {"method": method, "headers": headers}
        if json_body is not None:
            kwargs["data"] = json_body
        if form is not None:
            kwargs["form"] = form
        res = await self.page.request.fetch(url, **kwargs)
        res_headers = dict(res.headers or {})
        body = None
        if "application/json" in res_headers.get("content-type", ""):
            try:
                body = await res.json()
            except Exception:
                body = None
        return FetchResult(status=res.status, headers=res_headers, body=body)

    # observers
    def on_response(self, callback):
        """Feed every page response to ``callback``; returns a detach function."""

        def listener(response):
            try:
                observed = ObservedResponse.from_playwright(response)
            except Exception:
                return
            task = asyncio.create_task(callback(observed))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        self.page.on("response", listener)
        return lambda: self.page.remove_listener("response", listener)

    def on_console(self, callback):
        """Feed ``(type, text)`` of every console message to ``callback``."""

        def listener(msg):
            callback(msg.type, msg.text)

        self.page.on("console", listener)
        return lambda: self.page.remove_listener("console", listener)

    async def drain(self) -> None:
        """Wait for response callbacks already scheduled to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


@asynccontextmanager
async def open_session(headless: bool = True, mobile: bool = False, verbose: bool = False):
    """Launch Chromium with the device profile; the browser is always closed."""
    async with async_playwright() as p:
        try:
            browser = await p.chromium.launch(headless=headless)
            context = await browser.new_context(**context_options(mobile))
            page = await context.new_page()
        except PlaywrightError as e:
            raise InfrastructureError(f"Browser launch failed: {e}") from e
        if verbose:
            profile = "mobile" if mobile else "desktop"
            print(f"🌐 Browser ready (headless={headless}, profile={profile})", file=sys.stderr)
        try:
            yield PlaywrightActions(page, verbose=verbose)
        finally:
            await browser.close()
