"""
Tests for the Event Grid entry point of the ingest function.
"""

from unittest.mock import patch, MagicMock

import azure.functions as func

import IoTHub2ADTIngest
from IoTHub2ADTIngest import handler


def _event(data):
    event = MagicMock(spec=func.EventGridEvent)
    event.id = "a1b2c3"
    event.event_type = "Microsoft.Devices.DeviceTelemetry"
    event.get_json.return_value = data
    return event


class TestMain:

    def test_passes_event_data_to_handler(self):
        data = [{"deviceName": "d1", "readings": [{"resourceName": "CO2", "value": 412.5}]}]

        with patch.object(IoTHub2ADTIngest, "handle") as mock_handle:
            IoTHub2ADTIngest.main(_event(data))

        mock_handle.assert_called_once_with(data)

    def test_updates_twin_end_to_end(self, adt_client):
        data = '[{"deviceName":"d1","readings":[{"resourceName":"CH4","value":"1.75"}]}]'

        with patch.object(handler, "get_adt_client", return_value=adt_client):
            IoTHub2ADTIngest.main(_event(data))

        adt_client.update_digital_twin.assert_called_once_with("d1", [
            {"op": "replace", "path": "/deviceName", "value": "d1"},
            {"op": "replace", "path": "/CH4", "value": 1.75},
        ])

    def test_event_without_data_completes(self, adt_client):
        with patch.object(handler, "get_adt_client", return_value=adt_client):
            IoTHub2ADTIngest.main(_event(None))

        adt_client.update_digital_twin.assert_not_called()

    def test_missing_service_url_completes(self, monkeypatch, caplog):
        monkeypatch.delenv("ADT_SERVICE_URL")

        with patch.object(handler, "DigitalTwinsClient") as mock_client:
            IoTHub2ADTIngest.main(_event([{"deviceName": "d1", "readings": [{"resourceName": "CO2", "value": 1}]}]))

        mock_client.assert_not_called()
        assert 'Application setting "ADT_SERVICE_URL" not set' in caplog.text
