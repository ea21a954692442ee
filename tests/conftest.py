import pytest
import pytest_asyncio

from tests.session_helpers import FakeAuthServer, build_stack


@pytest.fixture
def auth_server() -> FakeAuthServer:
    server = FakeAuthServer()
    server.add_user("poet@example.com", "correct-horse", "poet")
    return server


@pytest_asyncio.fixture
async def stack(auth_server):
    session_stack = build_stack(auth_server)
    yield session_stack
    await session_stack.aclose()


@pytest_asyncio.fixture
async def offline_stack(auth_server):
    session_stack = build_stack(auth_server, online=False)
    yield session_stack
    await session_stack.aclose()
