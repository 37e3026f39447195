"""
Test configuration for SkillPath.

No live Mistral, no PostgreSQL: generators are scripted fakes (tests/fakes.py)
and the app persists to SQLite (aiosqlite) in a per-test temp directory.
"""
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from skillpath.tests.fakes import FakeGenerator, fenced, valid_assessment


@pytest.fixture
def sqlite_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'skillpath-test.db'}"


@pytest.fixture
def fake_generator() -> FakeGenerator:
    return FakeGenerator(chunks=["## Assessment\n", "Solid basics.\n\n", fenced(valid_assessment())])


@pytest_asyncio.fixture
async def app(sqlite_url, fake_generator):
    """App with its lifespan running against SQLite and the scripted generator."""
    from skillpath.main import create_app

    application = create_app(database_url=sqlite_url, generator=fake_generator)
    async with application.router.lifespan_context(application):
        yield application


@pytest_asyncio.fixture
async def client(app):
    """Async httpx client using ASGI transport - no live server needed."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
