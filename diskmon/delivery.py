"""Report transports and the retry loop around them."""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from email.message import EmailMessage
import json
import logging
import smtplib
import ssl
import threading
import time
from typing import Any

import paho.mqtt.client as mqtt

from diskmon.config import AppConfig, MailConfig, MqttConfig, RetryConfig

SMTP_TIMEOUT_S = 30.0
MQTT_CONNECT_TIMEOUT_S = 10.0
MQTT_PUBLISH_TIMEOUT_S = 10.0

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """A sink could not hand the report over."""


@dataclass(frozen=True)
class ReportMessage:
    subject: str
    html_body: str
    recipients: list[str] = field(default_factory=list)
    payload: dict[str, Any] = field(default_factory=dict)


class ReportSink:
    name = "sink"

    def deliver(self, message: ReportMessage) -> None:
        raise NotImplementedError


class SmtpSink(ReportSink):
    name = "smtp"

    def __init__(self, config: MailConfig) -> None:
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)

    def build_message(self, message: ReportMessage) -> EmailMessage:
        email = EmailMessage()
        email["Subject"] = message.subject
        email["From"] = self.config.email_from
        email["To"] = ", ".join(message.recipients or self.config.recipients)
        email.set_content(message.html_body, subtype="html")
        return email

    def _connect(self) -> smtplib.SMTP:
        security = self.config.smtp_security.lower()
        host, port = self.config.smtp_server, self.config.smtp_port
        if security == "ssl":
            return smtplib.SMTP_SSL(
                host, port, timeout=SMTP_TIMEOUT_S, context=ssl.create_default_context()
            )
        server = smtplib.SMTP(host, port, timeout=SMTP_TIMEOUT_S)
        if security == "starttls":
            try:
                server.starttls(context=ssl.create_default_context())
            except Exception:
                server.close()
                raise
        return server

    def deliver(self, message: ReportMessage) -> None:
        email = self.build_message(message)
        self.logger.info(
            "Sending report via %s:%s to %s",
            self.config.smtp_server,
            self.config.smtp_port,
            email["To"],
        )
        try:
            with self._connect() as server:
                if self.config.smtp_user or self.config.smtp_pass:
                    server.login(self.config.smtp_user, self.config.smtp_pass)
                server.send_message(email)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"SMTP error: {exc}") from exc


class MqttSink(ReportSink):
    name = "mqtt"

    def __init__(self, config: MqttConfig) -> None:
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)
        self._connected = threading.Event()
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
            protocol=mqtt.MQTTv311,
        )
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        if config.username:
            self.client.username_pw_set(config.username, config.password)
        if config.tls_enabled:
            self.client.tls_set(ca_certs=config.ca_cert, cert_reqs=ssl.CERT_REQUIRED)

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            self.logger.error("Failed to connect to MQTT broker: %s", reason_code)
            return
        self.logger.info(
            "Connected to MQTT broker %s:%s", self.config.host, self.config.port
        )
        self._connected.set()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        self._connected.clear()
        if reason_code.is_failure:
            self.logger.warning("Unexpectedly disconnected from MQTT broker: %s", reason_code)
        else:
            self.logger.debug("Disconnected from MQTT broker (clean)")

    def deliver(self, message: ReportMessage) -> None:
        self.logger.info(
            "Connecting to MQTT broker %s:%s", self.config.host, self.config.port
        )
        try:
            self.client.connect(
                self.config.host, self.config.port, keepalive=self.config.keepalive
            )
        except OSError as exc:
            raise DeliveryError(f"MQTT connection failed: {exc}") from exc
        self.client.loop_start()
        try:
            if not self._connected.wait(MQTT_CONNECT_TIMEOUT_S):
                raise DeliveryError("MQTT broker did not accept the connection")
            self.logger.debug("Publishing report payload to %s", self.config.base_topic)
            info = self.client.publish(
                self.config.base_topic,
                payload=json.dumps(message.payload),
                qos=self.config.qos,
                retain=self.config.retain,
            )
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise DeliveryError(f"MQTT publish failed, error code: {info.rc}")
            try:
                info.wait_for_publish(MQTT_PUBLISH_TIMEOUT_S)
            except (RuntimeError, ValueError) as exc:
                raise DeliveryError(f"MQTT publish failed: {exc}") from exc
            if not info.is_published():
                raise DeliveryError("MQTT publish was not acknowledged in time")
        finally:
            self.client.disconnect()
            self.client.loop_stop()


@dataclass(frozen=True)
class RetryPolicy:
    initial_delay_s: float = 1.0
    max_delay_s: float = 30.0
    max_elapsed_s: float = 300.0
    max_attempts: int = 3

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            initial_delay_s=config.initial_delay_s,
            max_delay_s=config.max_delay_s,
            max_elapsed_s=config.max_elapsed_s,
            max_attempts=config.max_attempts,
        )


def deliver_with_retry(
    sink: ReportSink,
    message: ReportMessage,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """Deliver with exponential backoff; returns the attempt that succeeded.

    Stops at ``max_attempts`` or when the next wait would pass
    ``max_elapsed_s``, re-raising the last DeliveryError.
    """
    started = clock()
    delay = policy.initial_delay_s
    attempt = 1
    while True:
        try:
            sink.deliver(message)
            return attempt
        except DeliveryError as exc:
            logger.error(
                "Delivery via %s failed (attempt %d/%d): %s",
                sink.name,
                attempt,
                policy.max_attempts,
                exc,
            )
            if attempt >= policy.max_attempts:
                raise
            if clock() - started + delay > policy.max_elapsed_s:
                logger.error("Giving up on %s after %.1fs.", sink.name, clock() - started)
                raise
        logger.info("Retrying %s in %.1fs.", sink.name, delay)
        sleep(delay)
        delay = min(delay * 2, policy.max_delay_s)
        attempt += 1


def build_sinks(config: AppConfig) -> list[ReportSink]:
    sinks: list[ReportSink] = []
    if config.mail.enabled:
        sinks.append(SmtpSink(config.mail))
    if config.mqtt.enabled:
        sinks.append(MqttSink(config.mqtt))
    return sinks
