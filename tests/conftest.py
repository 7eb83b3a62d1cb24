import asyncio
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from hud import UploadHud
from services import reset_services


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: run test in event loop")


@pytest.fixture
def event_loop():
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


@pytest.fixture(autouse=True)
def _reset_singletons():
    yield
    reset_services()
    UploadHud.reset_instance()


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    if asyncio.iscoroutinefunction(pyfuncitem.obj):
        loop = pyfuncitem.funcargs.get('event_loop')
        owned = loop is None
        if owned:
            loop = asyncio.new_event_loop()
        kwargs = {name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
        try:
            loop.run_until_complete(pyfuncitem.obj(**kwargs))
        finally:
            if owned:
                loop.close()
        return True
    return None
