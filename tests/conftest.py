import os
import sys

import pytest


def pytest_configure():
    # Make `src/` importable as top-level for `identity.*`, `tasks.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture(autouse=True)
def _fresh_signer_service():
    # Tests that fall back to the process-wide accessor must not leak logins.
    from identity.service import set_signer_service

    set_signer_service(None)
    yield
    set_signer_service(None)
