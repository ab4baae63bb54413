"""Test that the project setup is working correctly."""

import supermolt_arena


def test_version() -> None:
    """Test that version is defined."""
    assert supermolt_arena.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all subpackages can be imported."""
    from supermolt_arena import epochs, ledger, monitor, rewards, scoring, storage

    assert monitor is not None
    assert ledger is not None
    assert scoring is not None
    assert rewards is not None
    assert epochs is not None
    assert storage is not None
