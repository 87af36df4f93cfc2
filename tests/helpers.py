"""Mock database plumbing shared by the service tests."""

from unittest.mock import AsyncMock, MagicMock


def make_result(rows=None, mappings=None, scalar=None, scalars=None, rowcount=None):
    """A MagicMock shaped like a SQLAlchemy Result."""
    result = MagicMock()
    result.all.return_value = list(rows or [])
    result.fetchall.return_value = list(rows or [])
    result.mappings.return_value.all.return_value = list(mappings or [])
    result.scalar_one.return_value = scalar
    result.scalar.return_value = scalar
    result.scalars.return_value.all.return_value = list(scalars or [])
    result.rowcount = rowcount
    return result


def sql_of(call) -> str:
    """Rendered SQL of an execute() call's statement, whitespace-collapsed."""
    return " ".join(str(call.args[0]).split())


def params_of(call) -> dict:
    return call.args[1] if len(call.args) > 1 else {}


class _Transaction:
    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        self.session.began += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.session.committed += 1
        else:
            self.session.rolled_back += 1
        return False


class FakeSession:
    """Async session stand-in; execute() is routed through a handler."""

    def __init__(self, handler, calls):
        self._handler = handler
        self._calls = calls
        self.began = 0
        self.committed = 0
        self.rolled_back = 0
        self.execute = AsyncMock(side_effect=self._execute)

    async def _execute(self, statement, params=None):
        self._calls.append((statement, params))
        return self._handler(statement, params)

    def begin(self):
        return _Transaction(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSessionFactory:
    """Callable like async_sessionmaker; every session shares one call log.

    handler(statement, params) returns the result for each execute().
    """

    def __init__(self, handler=None):
        self.handler = handler or (lambda statement, params: make_result())
        self.calls: list[tuple] = []
        self.sessions: list[FakeSession] = []

    def __call__(self):
        session = FakeSession(self.handler, self.calls)
        self.sessions.append(session)
        return session

    def statements(self) -> list[str]:
        return [" ".join(str(stmt).split()) for stmt, _ in self.calls]
