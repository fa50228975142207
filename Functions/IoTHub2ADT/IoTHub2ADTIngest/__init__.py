import logging

import azure.functions as func
from .handler import handle


def main(event: func.EventGridEvent) -> None:
    logging.info('Python EventGrid trigger processed event %s of type %s', event.id, event.event_type)

    handle(event.get_json())
