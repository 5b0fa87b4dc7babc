from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from habitchain.core.cache import Cache
from habitchain.core.errors import TransientStoreError
from habitchain.core.store import Store


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


class FakeMessage:
    def __init__(self, content: str):
        self.content = content


class FakeChoice:
    def __init__(self, content: str):
        self.message = FakeMessage(content)


class FakeResponse:
    def __init__(self, content: str):
        self.choices = [FakeChoice(content)]


class FakeCompletions:
    def __init__(self, content: str = "", error: Exception = None):
        self.content = content
        self.error = error
        self.calls = []

    def create(self, *args, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return FakeResponse(self.content)


class FakeChat:
    def __init__(self, completions: FakeCompletions):
        self.completions = completions


class FakeGroq:
    def __init__(self, content: str = "", error: Exception = None, api_key: str = ""):
        self.chat = FakeChat(FakeCompletions(content, error))


class FailingCache(Cache):
    backend = "failing"

    def _fail(self, *args, **kwargs):
        raise TransientStoreError("cache down")

    get = setex = set_nx = delete = incr_window = _fail

    def ping(self) -> bool:
        return False


class FlakyStore(Store):
    """Fails the first `failures` units of work, then delegates."""

    def __init__(self, inner: Store, failures: int):
        self.inner = inner
        self.failures = failures
        self.calls = 0
        self.backend = inner.backend

    @contextmanager
    def unit_of_work(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientStoreError("store timeout")
        with self.inner.unit_of_work() as uow:
            yield uow
