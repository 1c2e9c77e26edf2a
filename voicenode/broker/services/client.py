from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from voicenode.result import Result

from .commands import Command

logger = logging.getLogger("broker")

DEFAULT_PORT = 1883

MessageHandler = Callable[[Dict[str, Any]], None]


class BrokerError(Exception):
    pass


class BrokerNotConnectedError(BrokerError):
    pass


@dataclass
class BrokerCredentials:
    user: str
    password: str = ""
    secret: str = ""


@dataclass
class BrokerConfig:
    client_id: str = "voicenode"
    keepalive: int = 60
    qos: int = 1
    connect_timeout_s: float = 10.0
    publish_timeout_s: float = 5.0
    command_topic: str = "dims/command/{topic}"
    reconnect_min_s: int = 1
    reconnect_max_s: int = 60
    tls: bool = False


def parse_address(address: str) -> Tuple[str, int]:
    """Split ``host``, ``host:port`` or ``mqtt://host:port`` into host and port."""
    text = (address or "").strip()
    if "://" not in text:
        text = "mqtt://" + text
    parts = urlsplit(text)
    if not parts.hostname:
        raise ValueError(f"invalid broker address: {address!r}")
    return parts.hostname, parts.port or DEFAULT_PORT


def _default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, protocol=mqtt.MQTTv5)


class BrokerClient:
    """MQTT client carrying outbound commands and topic subscriptions.

    paho runs its network loop in its own thread; connection state is handed
    back to the asyncio loop that called ``connect``.
    """

    def __init__(self, cfg: Optional[Dict] = None, client_factory: Optional[Callable[[str], Any]] = None):
        cfg = cfg or {}
        self.cfg = BrokerConfig(
            client_id=str(cfg.get("client_id", "voicenode")),
            keepalive=int(cfg.get("keepalive", 60)),
            qos=int(cfg.get("qos", 1)),
            connect_timeout_s=float(cfg.get("connect_timeout_s", 10.0)),
            publish_timeout_s=float(cfg.get("publish_timeout_s", 5.0)),
            command_topic=str(cfg.get("command_topic", "dims/command/{topic}")),
            reconnect_min_s=int(cfg.get("reconnect_min_s", 1)),
            reconnect_max_s=int(cfg.get("reconnect_max_s", 60)),
            tls=bool(cfg.get("tls", False)),
        )
        self._factory = client_factory or _default_client_factory
        self._client: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connack: Optional[asyncio.Future] = None
        self._handlers: Dict[str, MessageHandler] = {}

    @property
    def is_connected(self) -> bool:
        return self._client is not None and bool(self._client.is_connected())

    def topic_for(self, topic: str) -> str:
        return self.cfg.command_topic.format(topic=topic)

    def _connect_properties(self, credentials: BrokerCredentials) -> Optional[Properties]:
        if not credentials.secret:
            return None
        props = Properties(PacketTypes.CONNECT)
        props.UserProperty = ("secret", credentials.secret)
        return props

    async def connect(self, address: str, credentials: BrokerCredentials) -> Result[None]:
        try:
            host, port = parse_address(address)
        except ValueError as exc:
            return Result.failure(exc)

        self._loop = asyncio.get_running_loop()
        self._connack = self._loop.create_future()

        client = self._factory(self.cfg.client_id)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.username_pw_set(credentials.user, credentials.password or None)
        if self.cfg.tls:
            client.tls_set()
        client.reconnect_delay_set(min_delay=self.cfg.reconnect_min_s, max_delay=self.cfg.reconnect_max_s)
        self._client = client

        logger.info("Connecting to broker %s:%d as %s", host, port, credentials.user)
        try:
            client.connect_async(host, port, keepalive=self.cfg.keepalive, properties=self._connect_properties(credentials))
            client.loop_start()
        except Exception as exc:
            return Result.failure(exc)

        try:
            reason = await asyncio.wait_for(asyncio.shield(self._connack), timeout=self.cfg.connect_timeout_s)
        except asyncio.TimeoutError:
            return Result.failure(BrokerError(f"no answer from {host}:{port} within {self.cfg.connect_timeout_s:g}s"))
        if getattr(reason, "is_failure", False):
            return Result.failure(BrokerError(f"connection refused: {reason}"))
        return Result.success()

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if getattr(reason_code, "is_failure", False):
            logger.error("Broker refused connection: %s", reason_code)
        else:
            logger.info("Connected")
            for topic in self._handlers:
                client.subscribe(topic, qos=self.cfg.qos)
        loop, fut = self._loop, self._connack
        if loop is None or fut is None:
            return
        try:
            loop.call_soon_threadsafe(self._resolve_connack, fut, reason_code)
        except RuntimeError:
            logger.debug("Event loop closed before CONNACK was handled")

    @staticmethod
    def _resolve_connack(fut: asyncio.Future, reason_code: Any) -> None:
        if not fut.done():
            fut.set_result(reason_code)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:
        logger.warning("Disconnected from broker (%s)", reason_code)

    def _on_message(self, client, userdata, msg) -> None:
        handler = self._handlers.get(msg.topic)
        if handler is None:
            return
        try:
            payload = json.loads(msg.payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.warning("Ignoring undecodable payload on %s", msg.topic)
            return
        try:
            handler(payload)
        except Exception:
            logger.exception("Handler for %s failed", msg.topic)

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        """Route messages of ``topic`` to ``handler``; renewed on every reconnect."""
        full = self.topic_for(topic)
        self._handlers[full] = handler
        if self.is_connected:
            self._client.subscribe(full, qos=self.cfg.qos)

    async def send_command(self, command: Command) -> Result[None]:
        if not self.is_connected:
            return Result.failure(BrokerNotConnectedError(f"cannot send {command.Topic}: not connected"))
        try:
            info = self._client.publish(self.topic_for(command.Topic), command.to_payload(), qos=self.cfg.qos)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                return Result.failure(BrokerError(mqtt.error_string(info.rc)))
            if self.cfg.qos > 0:
                await asyncio.to_thread(info.wait_for_publish, self.cfg.publish_timeout_s)
                if not info.is_published():
                    return Result.failure(BrokerError(f"{command.Topic} not acknowledged within {self.cfg.publish_timeout_s:g}s"))
        except Exception as exc:
            return Result.failure(exc)
        logger.debug("Sent command %s", command.Topic)
        return Result.success()

    def publish_nowait(self, command: Command) -> None:
        """Fire-and-forget publish; dropped while disconnected."""
        if not self.is_connected:
            return
        self._client.publish(self.topic_for(command.Topic), command.to_payload(), qos=0)

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            await asyncio.to_thread(client.loop_stop)
        logger.info("Broker connection closed")
