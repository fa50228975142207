"""
EventGrid triggered Azure function, to forward IoT Hub device telemetry into Azure Digital Twins.
"""
import os
import json
import logging
import struct
from enum import Enum
from typing import Optional

import requests
from azure.core.pipeline.transport import RequestsTransport
from azure.digitaltwins.core import DigitalTwinsClient
from azure.identity import ManagedIdentityCredential


# constant definitions
ADT_SERVICE_URL_SETTING = 'ADT_SERVICE_URL'
ADT_SCOPE = 'https://digitaltwins.azure.net/.default'

class GAS_RESOURCES(Enum):
    CO2 = 'CO2'
    CH4 = 'CH4'
    NH3 = 'NH3'
    N2O = 'N2O'
    UNKNOWN = None

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN

# class definitions
class MessageFormatError(ValueError):
    pass

class DeviceMessage(object):
    device_name: str
    resource_name: str
    resource: GAS_RESOURCES
    value: float
    ignored_readings: int

    def __init__(self, device_name: str, resource_name: str, value: float, ignored_readings: int = 0):
        self.device_name = device_name
        self.resource_name = resource_name
        self.resource = GAS_RESOURCES(resource_name)
        self.value = value
        self.ignored_readings = ignored_readings

# shared across invocations of the same worker, so connections are pooled
HTTP_SESSION = requests.Session()

# disable HTTP request and response logs (headers etc.)
logging.getLogger('azure.core.pipeline.policies.http_logging_policy').setLevel(logging.WARNING)


def handle(event_data) -> int:
    '''
    Parses the device messages carried by the Event Grid event, and pushes the latest reading of each device to ADT.
    Messages are processed one after the other. Any error is logged and ends the invocation,
    so the messages after a failing one are not forwarded.
    :param event_data: the event data, either the parsed JSON array or its JSON encoded string
    :return int: number of digital twins updated
    '''
    adt_url = get_adt_service_url()
    n = 0
    try:
        adt_client = get_adt_client(adt_url)
        logging.info('ADT service client connection created.')
        if is_empty_payload(event_data):
            logging.info('Event carries no data, nothing to forward to ADT.')
            return n
        logging.info('Event data: %s', event_data)
        for raw_message in parse_payload(event_data):
            message = parse_device_message(raw_message)
            log_reading(message)
            patch = build_twin_patch(message)
            adt_client.update_digital_twin(message.device_name, patch)
            n = n+1
    except Exception as e:
        logging.error('Error in ingest function: %s', e)
        return n
    logging.info('Updated %d digital twins in ADT.', n)
    return n


###############################################################################
############################## utility functions ##############################
###############################################################################
def is_empty_payload(event_data) -> bool:
    if event_data is None:
        return True
    if isinstance(event_data, (str, bytes, bytearray)):
        return not event_data.strip()
    return False


def parse_payload(event_data) -> list:
    '''
    Deserializes the event data into the list of device messages.
    Event Grid hands the data over either already parsed, or as the JSON string the publisher sent.
    :param event_data: the event data
    :return list: the device message objects
    '''
    if isinstance(event_data, (bytes, bytearray)):
        event_data = event_data.decode('utf-8')
    if isinstance(event_data, str):
        event_data = json.loads(event_data)
    if not isinstance(event_data, list):
        raise ValueError('Event data is not an array of device messages, got %s' % type(event_data).__name__)
    return event_data


def parse_device_message(raw_message) -> DeviceMessage:
    '''
    Extracts device name, resource name and value from a device message.
    Only the first reading is used, any further readings of the message are ignored.
    :param raw_message: the device message object, e.g. {"deviceName": "d1", "readings": [{"resourceName": "CO2", "value": 412.5}]}
    :return DeviceMessage: the parsed message
    '''
    if not isinstance(raw_message, dict):
        raise MessageFormatError('device message must be an object, got %s' % type(raw_message).__name__)
    device_name = raw_message.get('deviceName')
    if not isinstance(device_name, str) or not device_name:
        raise MessageFormatError('device message has no "deviceName"')
    readings = raw_message.get('readings')
    if not isinstance(readings, list) or not readings:
        raise MessageFormatError('device message for "%s" has no "readings"' % device_name)
    reading = readings[0]
    if not isinstance(reading, dict):
        raise MessageFormatError('first reading of "%s" must be an object' % device_name)
    resource_name = reading.get('resourceName')
    if not isinstance(resource_name, str) or not resource_name:
        raise MessageFormatError('first reading of "%s" has no "resourceName"' % device_name)
    if reading.get('value') is None:
        raise MessageFormatError('first reading of "%s" has no "value"' % device_name)
    try:
        value = to_float32(reading['value'])
    except (TypeError, ValueError, OverflowError, struct.error) as e:
        raise MessageFormatError('value %r of "%s" is not a number: %s' % (reading['value'], device_name, e))

    if len(readings) > 1:
        # TODO: confirm with the gateway owners whether the remaining readings should be forwarded too
        logging.debug('Ignoring %d additional readings of device "%s".', len(readings) - 1, device_name)
    return DeviceMessage(device_name, resource_name, value, len(readings) - 1)


def to_float32(value) -> float:
    '''
    Coerces a reading value (number or numeric string) to single precision, the type of the twin properties.
    '''
    return struct.unpack('f', struct.pack('f', float(value)))[0]


def log_reading(message: DeviceMessage) -> None:
    if message.resource is GAS_RESOURCES.UNKNOWN:
        return
    logging.info('Device name: %s Resource name: %s %s: %s', message.device_name, message.resource_name,
        message.resource.value, message.value)


def build_twin_patch(message: DeviceMessage) -> list:
    '''
    Builds the JSON patch replacing the device name and the measured resource on the digital twin.
    :param DeviceMessage message: the parsed device message
    :return list: list of JSON patches
    '''
    return [
        {'op': 'replace', 'path': '/deviceName', 'value': message.device_name},
        {'op': 'replace', 'path': '/' + message.resource_name, 'value': message.value},
    ]


def get_adt_service_url() -> Optional[str]:
    '''
    Reads the ADT endpoint from the application settings.
    Add it in the Function App configuration as ADT_SERVICE_URL, e.g. https://<instance>.api.<region>.digitaltwins.azure.net
    A missing setting is only logged here; building the ADT client fails on it afterwards.
    :return str: the ADT endpoint URL, or None if not set
    '''
    url = os.getenv(ADT_SERVICE_URL_SETTING, '').strip()
    if not url:
        logging.error('Application setting "%s" not set', ADT_SERVICE_URL_SETTING)
        return None
    return url


def get_adt_client(url: Optional[str]) -> DigitalTwinsClient:
    '''
    Retrieves an Azure Digital Twin (ADT) client object, which allows to interact with ADT.
    Authenticates with the managed identity of the Function App. For a user-assigned identity,
    set AZURE_CLIENT_ID to its client ID.
    :param str url: the ADT endpoint URL
    :return: the ADT client object
    '''
    if not url:
        raise ValueError('ADT service URL is required')
    credential = ManagedIdentityCredential(client_id=os.getenv('AZURE_CLIENT_ID'))
    transport = RequestsTransport(session=HTTP_SESSION, session_owner=False)
    adt_client = DigitalTwinsClient(url, credential, transport=transport, credential_scopes=[ADT_SCOPE])
    return adt_client
