import asyncio
import inspect
import os
import sys
from pathlib import Path

# Settings are read lazily, but pin the environment before anything imports the runtime
os.environ["TEST_MODE"] = "true"
os.environ["USE_MEMORY_STORE"] = "true"
os.environ["ALLOW_REDIS_FALLBACK_DEV"] = "true"
# Run against the in-process cache so tests never touch a developer's Redis
os.environ["REDIS_URL"] = ""
os.environ["BACKEND_SITE_URL"] = "http://auth.test"
os.environ["TRUST_PROXY"] = "generic"
os.environ["WORKFLOW_CLEANUP_TOKEN"] = "cleanup-operator-token"
os.environ["QSTASH_URL"] = "http://queue.test"
os.environ["QSTASH_TOKEN"] = "queue-token"
os.environ["QSTASH_CURRENT_SIGNING_KEY"] = "sig-current-key"
os.environ["QSTASH_NEXT_SIGNING_KEY"] = "sig-next-key"
os.environ["OPENROUTER_API_KEY"] = "platform-key"
# base64 of 32 "a" bytes
os.environ["OPENROUTER_ENCRYPTION_KEY"] = "YWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWE="
os.environ["LLM_API_URL"] = "http://llm.test/api/v1/chat/completions"
os.environ["CLEANUP_BATCH_DELAY_SECONDS"] = "0"
os.environ["WORKFLOW_STEP_BACKOFF_MS"] = "0"
os.environ.pop("WORKFLOW_PUBLIC_BASE_URL", None)
os.environ.pop("APP_ORIGIN", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from chatjobs.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
