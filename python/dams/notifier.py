"""
a module for delivering notifications to users about the outcome of work that completes after the
request that launched it has returned--most notably, the ingestion of content by a queued job.

The base :py:class:`Notifier` records notifications in the log.  :py:class:`WebSocketNotifier`
broadcasts them via a websocket server that relays them to listening clients.
"""
import json, asyncio, logging
from collections import OrderedDict
from collections.abc import Mapping
from logging import Logger

import websockets

from .utils.prov import Agent
from .store.base import time_in_utc

deflogger = logging.getLogger(__name__)

class Notifier(object):
    """
    the interface for sending notifications to users.  This implementation writes the messages 
    to the log.
    """

    def __init__(self, logger: Logger = None):
        if not logger:
            logger = deflogger
        self.log = logger

    def notify_user(self, user: Agent, event: str, subject_id: str, message: str, **extra):
        """
        send a notification to a user about an event affecting a resource
        :param Agent   user:  the user to notify
        :param str    event:  a name for the event (e.g. "ingest_complete")
        :param str subject_id: the identifier of the resource the event applies to
        :param str  message:  a human-readable description of the event
        :param extra:         other properties to include in the notification
        """
        note = OrderedDict([
            ("user", user.actor if isinstance(user, Agent) else user),
            ("event", event),
            ("subject", subject_id),
            ("message", message),
            ("date", time_in_utc())
        ])
        note.update(extra)
        self.notify(json.dumps(note))

    def notify(self, message: str):
        """
        deliver a message formatted by :py:meth:`notify_user`
        """
        self.log.info("Notification: %s", message)


class WebSocketNotifier(Notifier):
    """
    A Notifier that sends messages via a websocket server in which this notifier plays the role of 
    a message "broadcaster".  The server recognizes this client as a broadcaster of messages via its
    use of a broadcast key.  Failures to deliver are logged and otherwise ignored.
    """
    def __init__(self, uri: str, broadcast_key: str = None, logger: Logger = None):
        """
        Create the notifier
        :param str uri:  the websocket server address
        :param str broadcast_key: a key that identifies this client to the server as a broadcaster.
        """
        super(WebSocketNotifier, self).__init__(logger)
        self.uri = uri
        self.api_key = broadcast_key or ""

    def notify(self, message: str):
        """
        Send a notification message via WebSocket.  If called from within a running event loop, 
        the message is sent asynchronously.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            asyncio.run(self._send_notification(message))
        else:
            loop.create_task(self._send_notification(message))
            self.log.debug("Notification coroutine submitted to the event loop")

    async def _send_notification(self, message: str):
        self.log.debug("Connecting to WebSocket server at %s...", self.uri)
        try:
            async with websockets.connect(self.uri) as websocket:
                if self.api_key:
                    message = f"{self.api_key},{message}"
                await websocket.send(message)
                self.log.debug("WebSocket message sent successfully.")
        except Exception as ex:
            self.log.error("Error sending WebSocket message: %s", str(ex))

def create_notifier(config: Mapping, log: Logger = None) -> Notifier:
    """
    create a Notifier according to the given configuration.  A :py:class:`WebSocketNotifier` is
    created if ``service_endpoint`` is set; otherwise, a log-only Notifier is returned.
    """
    if config and config.get('service_endpoint'):
        return WebSocketNotifier(config['service_endpoint'], config.get('broadcast_key'), log)
    return Notifier(log)
