import importlib

import pytest


@pytest.mark.parametrize(
    "module_name, attribute",
    [
        ("framesync", "FrameSyncError"),
        ("framesync.automation", "ExecutionController"),
        ("framesync.vault", "SecureVault"),
        ("framesync.service", "FrameSyncService"),
        ("framesync.web_server", "main"),
    ],
)
def test_public_modules_import(module_name: str, attribute: str) -> None:
    module = importlib.import_module(module_name)
    assert hasattr(module, attribute)
