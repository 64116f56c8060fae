import os
import sys


def pytest_configure(config):
    # Packages live under `src/` (common, state, cloud) and are imported top-level
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)
    config.addinivalue_line("markers", "asyncio: run the test inside an event loop (pytest-asyncio)")
