import itertools

import pytest

from gem_projects.config import Settings, load_selectors
from gem_projects.errors import SurfaceError
from gem_projects.extractor import ContentExtractor
from gem_projects.store import JsonStore, StoreWriter

TRIP_PLAN_HTML = """
<html><body>
<nav>Recent chats</nav>
<main>
  <div class="conversation-container">
    <user-query class="user-query">
      <p>Plan a three day trip to Kyoto in autumn.</p>
    </user-query>
    <model-response class="model-response">
      <p>Day one: Fushimi Inari early in the morning, then Gion in the evening.</p>
      <button>Copy</button>
    </model-response>
  </div>
  <div class="conversation-container">
    <user-query class="user-query">
      <p>Where should we stay?</p>
    </user-query>
    <model-response class="model-response">
      <p>Stay near Kyoto Station for easy rail access to <b>Nara</b> and Osaka.</p>
    </model-response>
  </div>
</main>
</body></html>
"""

_ids = itertools.count(1)


class FakeSurface:
    """In-memory stand-in for a Playwright tab."""

    def __init__(self, url="https://gemini.google.com/app", html="", alive=True,
                 ready_states=("complete",)):
        self.surface_id = f"fake-{next(_ids)}"
        self.url = url
        self.content = html
        self.alive = alive
        self.ready_states = list(ready_states)
        self.generating = False
        self.closed = False
        self.submitted = []
        self.navigations = []
        self.navigate_result = True
        self.navigate_url = None
        self.on_submit = None
        self._observers = []
        self._close_callbacks = []

    def is_closed(self):
        return self.closed

    def on_close(self, callback):
        self._close_callbacks.append(callback)

    async def probe(self):
        return self.alive and not self.closed

    async def ready_state(self):
        if len(self.ready_states) > 1:
            return self.ready_states.pop(0)
        return self.ready_states[0]

    async def html(self):
        return self.content

    async def observe(self, callback):
        self._observers.append(callback)

    async def stop_observing(self, callback=None):
        if callback is None:
            self._observers.clear()
        elif callback in self._observers:
            self._observers.remove(callback)

    @property
    def observing(self):
        return bool(self._observers)

    def mutate(self, html=None):
        if html is not None:
            self.content = html
        for callback in list(self._observers):
            callback()

    async def submit_prompt(self, text):
        self.submitted.append(text)
        if self.on_submit is not None:
            self.on_submit(self, text)
        return True

    async def is_generating(self):
        return self.generating

    async def navigate_to_chat(self, chat_id, title, surrogate):
        self.navigations.append((chat_id, title, surrogate))
        if self.navigate_result and self.navigate_url:
            self.url = self.navigate_url
        return self.navigate_result

    async def close(self):
        if self.closed:
            return
        self.closed = True
        for callback in self._close_callbacks:
            callback()

    def kill(self):
        """Simulates the user closing the tab."""
        self.closed = True
        for callback in self._close_callbacks:
            callback()


class FakeDriver:
    def __init__(self, factory=None):
        self.factory = factory or (lambda url: FakeSurface(url=url))
        self.opened = []
        self.app_surface = None
        self.fail_open = False

    async def open(self, url):
        if self.fail_open:
            raise SurfaceError(f"Failed to open {url}")
        surface = self.factory(url)
        surface.url = url
        self.opened.append(surface)
        return surface

    async def find_app_surface(self):
        return self.app_surface

    @property
    def live(self):
        return [s for s in self.opened if not s.closed]


@pytest.fixture
def selectors():
    return load_selectors()


@pytest.fixture
def settings(selectors):
    return Settings(
        queue_safety_timeout=1.0,
        queue_cooldown=0.01,
        session_load_timeout=0.5,
        session_load_poll=0.01,
        session_probe_attempts=3,
        session_probe_interval=0.01,
        stability_quiet_period=0.05,
        exchange_quiet_period=0.05,
        exchange_extensions=5,
        discovery_timeout=0.2,
        discovery_poll=0.01,
        request_timeout=2.0,
        selectors=selectors['selectors'],
        boilerplate=selectors['boilerplate'],
    )


@pytest.fixture
def extractor(settings):
    return ContentExtractor.from_settings(settings)


@pytest.fixture
def store(tmp_path):
    return JsonStore(str(tmp_path / "kb"))


@pytest.fixture
def writer(store):
    return StoreWriter(store)


@pytest.fixture
def driver():
    return FakeDriver()


def chatty_surface(url):
    """A surface that answers every prompt and moves to a real chat url."""
    surface = FakeSurface(url=url)
    history = []

    def answer(page, prompt):
        question = prompt.split("[USER QUERY]\n")[-1]
        history.append((question, f"Answer to: {question}"))
        page.url = "https://gemini.google.com/app/c_real42"
        page.mutate("".join(
            f'<div class="user-query"><p>{q}</p></div><div class="model-response"><p>{a}</p></div>'
            for q, a in history
        ))

    surface.on_submit = answer
    return surface
