"""Identify a server's software from the way it rejects a malformed login.

The login probe sends a login start packet with one byte more than the
server expects. Most server implementations then disconnect with their
packet decoder's exception message, which names the server's own packet
class. The cascade below classifies that message, first match wins.
Heavily inspired by matscan's fingerprinting:
https://github.com/mat-1/matscan/blob/master/src/processing/minecraft_fingerprinting.rs
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from mcprobe.client import DEFAULT_TIMEOUT, SlpClient
from mcprobe.protocol import (
    LOGIN_COMPRESSION_ID,
    LOGIN_DISCONNECT_ID,
    LOGIN_ENCRYPTION_ID,
    LOGIN_PLUGIN_ID,
    LOGIN_SUCCESS_ID,
    ProbeError,
    StreamClosedError,
)
from mcprobe.response import ChatComponent, MalformedResponseError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from mcprobe.address import Address

log = logging.getLogger(__name__)


class Software(StrEnum):
    """Fingerprint labels."""

    VANILLA = "vanilla"
    CRAFTBUKKIT = "craftbukkit"
    PAPER = "paper"
    FABRIC = "fabric"
    FORGE = "forge"
    VELOCITY = "velocity"
    EMPTY = "empty"
    ENCRYPTION = "encryption"
    SUCCESS = "success"
    COMPRESSION = "compression"
    PLUGIN = "plugin"
    UNKNOWN = "unknown"


THROTTLED_TEXT = "Connection throttled! Please wait before reconnecting."
VELOCITY_TEXT = "This server is only compatible with Minecraft 1.13 and above."
GENERIC_REASON = "disconnect.genericReason"
PASSTHROUGH_TOPIC = "%s"
VERSION_MISMATCH_TOPICS = frozenset(
    {
        "multiplayer.disconnect.incompatible",
        "multiplayer.disconnect.outdated_client",
        "multiplayer.disconnect.outdated_server",
    }
)

_OUTDATED_CLIENT = re.compile(r"^Outdated client! Please use (?P<version>\d+\.\d+(?:\.\d+)?)$")
_EXCEPTION_PREFIXES = (
    "Internal Exception: io.netty.handler.codec.DecoderException: java.io.IOException: Packet ",
    "Internal Exception: io.netty.handler.codec.DecoderException: Packet ",
)
# "packet 0" before 1.20.5, "packet serverbound/minecraft:hello" after
_TRAILING_BOILERPLATE = re.compile(
    r" was larger than I expected, found \d+ bytes extra whilst reading packet [\w/:.-]+$"
)
# "login/0 ", "2/0 " or "login/serverbound/minecraft:hello "
_STATE_PREFIX = re.compile(r"^\w+/[\w/:.-]+ ")

_LOGIN_IDS = {
    LOGIN_ENCRYPTION_ID: Software.ENCRYPTION,
    LOGIN_SUCCESS_ID: Software.SUCCESS,
    LOGIN_COMPRESSION_ID: Software.COMPRESSION,
    LOGIN_PLUGIN_ID: Software.PLUGIN,
}


class FingerprintError(ProbeError):
    """Base class for responses that cannot be classified."""


class ConnectionThrottledError(FingerprintError):
    """Raised when the server throttled the probe connection."""


class VersionMismatchError(FingerprintError):
    """Raised when the server rejected the probe's protocol version."""

    def __init__(self, version: str) -> None:
        super().__init__(f"Version mismatch: server requires {version or 'another version'}")
        self.version = version


class EmptyErrorTopicError(FingerprintError):
    """Raised when a disconnect message has no translation key."""


class UnfamiliarErrorTopicError(FingerprintError):
    """Raised when a disconnect message uses an unknown translation key."""

    def __init__(self, topic: str) -> None:
        super().__init__(f"Server responded with unfamiliar error topic: {topic}")
        self.topic = topic


class IncompleteDisconnectError(FingerprintError):
    """Raised when a generic disconnect message carries no reason."""


class UnfamiliarPacketIDError(FingerprintError):
    """Raised when the login response has an unknown packet ID."""

    def __init__(self, packet_id: int) -> None:
        super().__init__(f"Unfamiliar packet id: {packet_id}")
        self.packet_id = packet_id


class MalformedDisconnectError(FingerprintError):
    """Raised when the disconnect body is neither known text nor valid JSON."""


@dataclass(frozen=True)
class FingerprintResult:
    """Outcome of a fingerprint; ``reason`` explains an ``unknown`` label."""

    label: str
    reason: FingerprintError | None = None

    @property
    def ambiguous(self) -> bool:
        return self.reason is not None


@dataclass(frozen=True)
class Pattern:
    """Maps a stripped exception fragment to a label.

    Exactly one of ``literal`` (exact match) or ``regex`` (full match) is
    set.
    """

    label: str
    literal: str | None = None
    regex: str | None = None

    def __post_init__(self) -> None:
        if (self.literal is None) == (self.regex is None):
            msg = "A pattern needs exactly one of literal or regex"
            raise ValueError(msg)
        if self.regex is not None:
            re.compile(self.regex)

    def matches(self, fragment: str) -> bool:
        if self.literal is not None:
            return fragment == self.literal
        return re.fullmatch(self.regex, fragment) is not None


DEFAULT_PATTERNS: tuple[Pattern, ...] = (
    Pattern(Software.CRAFTBUKKIT, literal="(PacketLoginInStart)"),
    # Paper switched to Mojang's mappings in 1.20.5
    Pattern(Software.PAPER, literal="(ServerboundHelloPacket)"),
    # vanilla obfuscated class names, e.g. (afu) or (aiy)
    Pattern(Software.VANILLA, regex=r"\(.{2,3}\)"),
    # intermediary names, e.g. (class_2915)
    Pattern(Software.FABRIC, regex=r"\(class_\d+\)"),
)


@dataclass(frozen=True)
class DisconnectMessage:
    """A disconnect reason as sent by the server.

    Either ``text`` or ``translate`` with its ``with_`` arguments is set.
    """

    translate: str = ""
    with_: tuple[str, ...] = ()
    text: str = ""

    @classmethod
    def parse(cls, raw: str) -> DisconnectMessage:
        """Parse a JSON object or JSON string disconnect reason."""
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            msg = f"Failed to parse disconnect message: {e}"
            raise MalformedDisconnectError(msg) from e
        if isinstance(value, str):
            return cls(text=value)
        if not isinstance(value, dict):
            msg = f"Disconnect message is not an object: {raw!r}"
            raise MalformedDisconnectError(msg)
        return cls(
            translate=str(value.get("translate") or ""),
            with_=tuple(_argument_text(arg) for arg in value.get("with") or ()),
            text=str(value.get("text") or ""),
        )

    def version_mismatch(self) -> str | None:
        """Return the required version if this is a version mismatch, else None."""
        if self.translate not in VERSION_MISMATCH_TOPICS:
            return None
        return self.with_[0] if self.with_ else ""


def _argument_text(arg: Any) -> str:
    if isinstance(arg, str):
        return arg
    try:
        return str(ChatComponent.from_json(arg))
    except MalformedResponseError:
        return str(arg)


def strip_exception(reason: str) -> str:
    """Reduce a decoder exception message to the packet class fragment.

    ``Internal Exception: ... Packet login/0 (afu) was larger than I
    expected, ...`` becomes ``(afu)``.
    """
    for prefix in _EXCEPTION_PREFIXES:
        if reason.startswith(prefix):
            reason = reason[len(prefix) :]
            break
    reason = _TRAILING_BOILERPLATE.sub("", reason)
    return _STATE_PREFIX.sub("", reason, count=1)


class Fingerprinter:
    """Classifies login probe responses.

    ``extra_patterns`` are tried before ``patterns``, so configured patterns
    can refine or override the built-in table.
    """

    def __init__(
        self,
        patterns: Iterable[Pattern] = DEFAULT_PATTERNS,
        extra_patterns: Iterable[Pattern] = (),
    ) -> None:
        self.patterns = (*extra_patterns, *patterns)

    def classify(self, packet_id: int, body: str) -> FingerprintResult:
        """Classify a login response, never raising for unclassifiable input."""
        try:
            return FingerprintResult(self._classify(packet_id, body))
        except FingerprintError as e:
            log.debug("Could not fingerprint response %d %r: %s", packet_id, body, e)
            return FingerprintResult(Software.UNKNOWN, e)

    def classify_message(self, message: DisconnectMessage) -> str:
        """Classify a parsed disconnect message.

        Raises FingerprintError when the message cannot be classified.
        """
        if message.text == VELOCITY_TEXT:
            return Software.VELOCITY
        if message.text == THROTTLED_TEXT:
            raise ConnectionThrottledError(THROTTLED_TEXT)
        if "Forge" in message.text:
            return Software.FORGE
        if not message.translate:
            msg = "Empty error topic"
            raise EmptyErrorTopicError(msg)

        version = message.version_mismatch()
        if version is not None:
            raise VersionMismatchError(version)

        if message.translate not in (GENERIC_REASON, PASSTHROUGH_TOPIC):
            raise UnfamiliarErrorTopicError(message.translate)
        if not message.with_:
            msg = "Incomplete disconnect message"
            raise IncompleteDisconnectError(msg)

        return self.match(strip_exception(message.with_[0]))

    def match(self, fragment: str) -> str:
        """Look up a stripped exception fragment in the pattern table."""
        for pattern in self.patterns:
            if pattern.matches(fragment):
                return pattern.label
        return Software.UNKNOWN

    def probe(self, client: SlpClient) -> FingerprintResult:
        """Send the login probe through the client and classify the response.

        Network errors propagate; a closed stream is the ``empty`` label.
        """
        try:
            packet_id, body = client.login_error()
        except StreamClosedError:
            return FingerprintResult(Software.EMPTY)
        return self.classify(packet_id, body)

    def _classify(self, packet_id: int, body: str) -> str:
        if packet_id != LOGIN_DISCONNECT_ID:
            if packet_id in _LOGIN_IDS:
                return _LOGIN_IDS[packet_id]
            raise UnfamiliarPacketIDError(packet_id)

        if body.startswith("{"):
            return self.classify_message(DisconnectMessage.parse(body))

        # A JSON string or component list is flattened, plain text passes through
        try:
            text = str(ChatComponent.parse(body))
        except MalformedResponseError as e:
            msg = f"Failed to parse disconnect message: {e}"
            raise MalformedDisconnectError(msg) from e

        if not text:
            return Software.EMPTY
        if text == THROTTLED_TEXT:
            raise ConnectionThrottledError(THROTTLED_TEXT)
        if match := _OUTDATED_CLIENT.match(text):
            raise VersionMismatchError(match.group("version"))
        # "This server has mods that require Forge to be installed on the client."
        # or "... require FML/Forge to be installed ..."
        if "Forge" in text:
            return Software.FORGE

        if body.startswith(('"', "[")):
            return self.classify_message(DisconnectMessage(text=text))
        msg = f"Unrecognized disconnect text: {text!r}"
        raise MalformedDisconnectError(msg)


def fingerprint_with_protocol(
    address: Address | str,
    protocol: int,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    srv: bool = True,
    fingerprinter: Fingerprinter | None = None,
) -> FingerprintResult:
    """Probe a server whose protocol version is already known."""
    fingerprinter = fingerprinter or Fingerprinter()
    with SlpClient(address, timeout=timeout, protocol=protocol, srv=srv) as client:
        return fingerprinter.probe(client)


def fingerprint(
    address: Address | str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    srv: bool = True,
    fingerprinter: Fingerprinter | None = None,
) -> FingerprintResult:
    """Query the server's protocol version, then probe it.

    Probing with the server's own protocol version avoids a version
    mismatch disconnect hiding the decoder exception.
    """
    with SlpClient(address, timeout=timeout, srv=srv) as client:
        status = client.status()
    return fingerprint_with_protocol(
        address,
        status.version.protocol,
        timeout=timeout,
        srv=srv,
        fingerprinter=fingerprinter,
    )
