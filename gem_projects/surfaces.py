# ==============================================================================
# gem-projects - Browser Surfaces (Playwright over CDP)
# Requires: pip install playwright
# ==============================================================================
"""
A "surface" is one browser tab of the target application. Everything the
core needs from a tab goes through the small interface below, so tests can
swap in fakes:

    surface.surface_id / surface.url / surface.is_closed()
    await surface.probe()                 liveness round-trip -> bool
    await surface.ready_state()           document.readyState
    await surface.html()                  full page HTML
    await surface.observe(callback)       DOM mutation notifications
    await surface.stop_observing(callback)
    await surface.submit_prompt(text)     type + send -> bool
    await surface.is_generating()         stop button visible -> bool
    await surface.navigate_to_chat(id, title, surrogate)  sidebar lookup -> bool
    surface.on_close(callback)
    await surface.close()

The driver opens background surfaces and finds the user's own visible one.
"""

import asyncio
import itertools
import logging
import uuid

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from .errors import SurfaceError

log = logging.getLogger(__name__)

_surface_ids = itertools.count(1)

OBSERVER_JS = """
(name) => {
    window.__gemProjectsObservers = window.__gemProjectsObservers || {};
    let pending = false;
    const observer = new MutationObserver((mutations) => {
        if (pending) return;
        if (mutations.some(m => m.type === 'childList' || m.type === 'characterData')) {
            pending = true;
            Promise.resolve(window[name]()).finally(() => { pending = false; });
        }
    });
    observer.observe(document.body, { childList: true, subtree: true, characterData: true });
    window.__gemProjectsObservers[name] = observer;
}
"""

DISCONNECT_JS = """
(name) => {
    const registry = window.__gemProjectsObservers || {};
    if (registry[name]) {
        registry[name].disconnect();
        delete registry[name];
    }
}
"""

INJECT_JS = """
({ text, selectors }) => {
    let editor = null;
    for (const sel of selectors) {
        const el = document.querySelector(sel);
        if (el && el.offsetParent !== null) { editor = el; break; }
    }
    if (!editor) return false;
    editor.focus();
    document.execCommand('selectAll', false);
    document.execCommand('insertText', false, text);
    editor.dispatchEvent(new Event('input', { bubbles: true }));
    editor.dispatchEvent(new Event('change', { bubbles: true }));
    return true;
}
"""

SUBMIT_JS = """
(selectors) => {
    for (const sel of selectors) {
        try {
            const btn = document.querySelector(sel);
            if (btn && !btn.disabled && btn.offsetParent !== null) { btn.click(); return true; }
        } catch (e) { /* unsupported selector */ }
    }
    return false;
}
"""

FIND_CHAT_JS = """
({ chatId, title, surrogate, itemClasses, excluded }) => {
    const all = [];
    const walk = (root) => {
        for (const el of root.querySelectorAll('*')) {
            all.push(el);
            if (el.shadowRoot) walk(el.shadowRoot);
        }
    };
    walk(document);

    const link = all.find(el => el instanceof HTMLAnchorElement && el.href.includes(`/app/${chatId}`));
    if (link) { link.click(); return true; }

    // Real ids missing from the sidebar must not fall back to title search.
    if (!surrogate || !title || !title.trim()) return false;

    const candidates = all.filter(el => {
        if (!el.textContent || !el.textContent.includes(title)) return false;
        if (excluded.some(sel => { try { return el.closest(sel); } catch (e) { return false; } })) return false;
        const cls = typeof el.className === 'string' ? el.className : (el.getAttribute('class') || '');
        return el.tagName === 'A' || el.tagName === 'BUTTON' || itemClasses.some(c => cls.includes(c));
    });
    for (const cand of candidates) {
        const clickable = (cand.tagName === 'A' || cand.tagName === 'BUTTON')
            ? cand : cand.closest('a, button, mat-list-item, [role="button"]');
        if (clickable) { clickable.click(); return true; }
    }
    return false;
}
"""


class PlaywrightSurface:
    def __init__(self, page, selectors, owned=True):
        self.page = page
        self.selectors = selectors
        self.owned = owned
        self.surface_id = f"tab-{next(_surface_ids)}"
        self._binding = f"__gemProjectsMutation_{uuid.uuid4().hex[:8]}"
        self._bound = False
        self._callbacks = []

    def __repr__(self):
        return f"<Surface {self.surface_id} {self.url}>"

    @property
    def url(self):
        return self.page.url

    def is_closed(self):
        return self.page.is_closed()

    def on_close(self, callback):
        self.page.on("close", lambda _page: callback())

    async def _evaluate(self, script, arg=None):
        try:
            return await self.page.evaluate(script, arg)
        except PlaywrightError as e:
            raise SurfaceError(f"{self.surface_id}: {e}") from e

    async def probe(self):
        if self.is_closed():
            return False
        try:
            return await self.page.evaluate("() => 'PONG'") == 'PONG'
        except PlaywrightError as e:
            log.debug("[Surface] Probe failed on %s: %s", self.surface_id, e)
            return False

    async def ready_state(self):
        return await self._evaluate("() => document.readyState")

    async def html(self):
        try:
            return await self.page.content()
        except PlaywrightError as e:
            raise SurfaceError(f"{self.surface_id}: {e}") from e

    async def observe(self, callback):
        # Playwright cannot remove a binding, so each surface exposes exactly one.
        if not self._bound:
            try:
                await self.page.expose_function(self._binding, self._on_mutation)
            except PlaywrightError as e:
                raise SurfaceError(f"{self.surface_id}: {e}") from e
            self._bound = True
        self._callbacks.append(callback)
        if len(self._callbacks) == 1:
            await self._evaluate(OBSERVER_JS, self._binding)

    def _on_mutation(self, *_):
        for callback in list(self._callbacks):
            callback()

    async def stop_observing(self, callback=None):
        """Detaches `callback`, or every callback when None."""
        if callback is None:
            self._callbacks.clear()
        elif callback in self._callbacks:
            self._callbacks.remove(callback)
        else:
            return
        if self._callbacks or self.is_closed():
            return
        try:
            await self.page.evaluate(DISCONNECT_JS, self._binding)
        except PlaywrightError:
            log.debug("[Surface] Observer on %s already gone", self.surface_id)

    async def submit_prompt(self, text):
        typed = await self._evaluate(INJECT_JS, {"text": text, "selectors": self.selectors.get('editor', [])})
        if not typed:
            log.error("[Surface] Could not find editor element on %s", self.surface_id)
            return False

        # Give the UI a moment to register the input, then submit
        await asyncio.sleep(0.15)
        if await self._evaluate(SUBMIT_JS, self.selectors.get('submit_button', [])):
            return True

        log.debug("[Surface] No submit button found, pressing Enter")
        try:
            await self.page.keyboard.press("Enter")
        except PlaywrightError as e:
            raise SurfaceError(f"{self.surface_id}: {e}") from e
        return True

    async def is_generating(self):
        stop_sel = self.selectors.get('stop_button')
        if not stop_sel:
            return False
        return bool(await self._evaluate("(sel) => !!document.querySelector(sel)", stop_sel))

    async def navigate_to_chat(self, chat_id, title, surrogate):
        return bool(await self._evaluate(FIND_CHAT_JS, {
            "chatId": chat_id,
            "title": title or "",
            "surrogate": surrogate,
            "itemClasses": self.selectors.get('chat_item_classes', []),
            "excluded": self.selectors.get('excluded_regions', []),
        }))

    async def close(self):
        # Borrowed tabs belong to the user.
        if self.is_closed() or not self.owned:
            return
        try:
            await self.page.close()
        except PlaywrightError as e:
            log.debug("[Surface] Close failed on %s: %s", self.surface_id, e)


class PlaywrightDriver:
    """
    Owns the CDP connection. Background surfaces are tabs opened by us; the
    user's own tabs of the target domain are only borrowed (discovery).
    """

    def __init__(self, settings):
        self.settings = settings
        self._playwright = None
        self._browser = None
        self._context = None
        self._borrowed = {}
        self._owned = set()

    async def connect(self):
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.connect_over_cdp(self.settings.cdp_url)
        except PlaywrightError as e:
            await self._playwright.stop()
            self._playwright = None
            raise SurfaceError(
                f"Connection to {self.settings.cdp_url} failed: {e}. "
                "Make sure Chrome is running with --remote-debugging-port=9222"
            ) from e

        log.info("[Conn] Connected to Chrome at %s", self.settings.cdp_url)
        if self._browser.contexts:
            self._context = self._browser.contexts[0]
        else:
            self._context = await self._browser.new_context()

    def _require_context(self):
        if self._context is None:
            raise SurfaceError("driver is not connected")
        return self._context

    async def open(self, url):
        context = self._require_context()
        try:
            page = await context.new_page()
            await page.goto(url, wait_until="commit")
        except PlaywrightError as e:
            raise SurfaceError(f"Failed to open {url}: {e}") from e
        self._owned.add(page)
        page.on("close", self._owned.discard)
        surface = PlaywrightSurface(page, self.settings.selectors)
        log.debug("[Conn] Opened %s", surface)
        return surface

    async def find_app_surface(self):
        """The user's own visible tab of the target application, if any."""
        context = self._require_context()
        for page in context.pages:
            if page.is_closed() or self.settings.target_domain not in page.url:
                continue
            if page in self._owned:
                continue
            surface = self._borrowed.get(id(page))
            if surface is None or surface.page is not page:
                surface = PlaywrightSurface(page, self.settings.selectors, owned=False)
                self._borrowed[id(page)] = surface
                page.on("close", lambda _page, key=id(page): self._borrowed.pop(key, None))
            return surface
        return None

    async def shutdown(self):
        self._borrowed.clear()
        self._owned.clear()
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        self._browser = None
        self._context = None
