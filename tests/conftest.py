import pytest


@pytest.fixture(scope="function", autouse=True)
def mock_env_vars(monkeypatch):
    """Set mock environment variables to prevent accidental cloud calls."""
    monkeypatch.setenv("ADT_SERVICE_URL", "https://test-instance.api.weu.digitaltwins.azure.net")
    monkeypatch.delenv("AZURE_CLIENT_ID", raising=False)


@pytest.fixture(scope="function")
def adt_client():
    """ADT client double recording the update calls."""
    from unittest.mock import MagicMock
    from azure.digitaltwins.core import DigitalTwinsClient

    return MagicMock(spec=DigitalTwinsClient)
