"""Status response document returned by a server list ping.

Field names follow the JSON document the server sends; see
https://wiki.vg/Server_List_Ping#Status_Response
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import json
from dataclasses import dataclass, field
from typing import Any

from mcprobe.formatting import legacy_color_code
from mcprobe.protocol import ProbeError

FAVICON_PREFIX = "data:image/png;base64,"

_STYLE_CODES = (
    ("bold", "l"),
    ("italic", "o"),
    ("underlined", "n"),
    ("strikethrough", "m"),
    ("obfuscated", "k"),
)


class MalformedResponseError(ProbeError):
    """Raised when a status response is not a valid status document."""


@dataclass(frozen=True)
class ClickEvent:
    action: str
    value: str


@dataclass(frozen=True)
class HoverEvent:
    action: str
    contents: Any


@dataclass(frozen=True)
class ChatComponent:
    """A formatted text component, the structured form of a description.

    Style flags are ``None`` when the component inherits them from its
    parent.
    """

    text: str = ""
    bold: bool | None = None
    italic: bool | None = None
    underlined: bool | None = None
    strikethrough: bool | None = None
    obfuscated: bool | None = None
    font: str = ""
    color: str = ""
    insertion: str = ""
    click_event: ClickEvent | None = None
    hover_event: HoverEvent | None = None
    translate: str = ""
    with_: tuple[ChatComponent, ...] = ()
    extra: tuple[ChatComponent, ...] = ()

    @classmethod
    def parse(cls, raw: str) -> ChatComponent:
        """Decode a raw JSON text payload.

        The first non-blank character selects the variant: a JSON string, a
        component object, or a list of components. Anything else is taken as
        plain text, which is what pre-JSON servers send.
        """
        first = raw.lstrip()[:1]
        if first not in ('"', "{", "["):
            return cls(text=raw)
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            msg = f"Failed to parse text component: {e}"
            raise MalformedResponseError(msg) from e
        return cls.from_json(value)

    @classmethod
    def from_json(cls, value: Any) -> ChatComponent:
        """Normalise a decoded description (string, object or list) into a tree."""
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(text=value)
        if isinstance(value, bool):
            return cls(text=str(value).lower())
        if isinstance(value, int | float):
            return cls(text=str(value))
        if isinstance(value, list):
            return cls(extra=tuple(cls.from_json(item) for item in value))
        if not isinstance(value, dict):
            msg = f"Unsupported text component: {value!r}"
            raise MalformedResponseError(msg)

        click = value.get("clickEvent")
        hover = value.get("hoverEvent")
        return cls(
            text=str(value.get("text", "")),
            bold=value.get("bold"),
            italic=value.get("italic"),
            underlined=value.get("underlined"),
            strikethrough=value.get("strikethrough"),
            obfuscated=value.get("obfuscated"),
            font=value.get("font", ""),
            color=value.get("color", ""),
            insertion=value.get("insertion", ""),
            click_event=(
                ClickEvent(click.get("action", ""), str(click.get("value", "")))
                if isinstance(click, dict)
                else None
            ),
            hover_event=(
                HoverEvent(hover.get("action", ""), hover.get("contents"))
                if isinstance(hover, dict)
                else None
            ),
            translate=value.get("translate", ""),
            with_=tuple(cls.from_json(arg) for arg in value.get("with") or ()),
            extra=tuple(cls.from_json(item) for item in value.get("extra") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"text": self.text}
        for name, _code in _STYLE_CODES:
            flag = getattr(self, name)
            if flag is not None:
                data[name] = flag
        for key in ("font", "color", "insertion", "translate"):
            if getattr(self, key):
                data[key] = getattr(self, key)
        if self.click_event is not None:
            data["clickEvent"] = dataclasses.asdict(self.click_event)
        if self.hover_event is not None:
            data["hoverEvent"] = dataclasses.asdict(self.hover_event)
        if self.with_:
            data["with"] = [arg.to_dict() for arg in self.with_]
        if self.extra:
            data["extra"] = [item.to_dict() for item in self.extra]
        return data

    def own_text(self) -> str:
        """The text of this component alone, without its children."""
        if not self.translate:
            return self.text
        args = tuple(str(arg) for arg in self.with_)
        try:
            return self.translate % args
        except (TypeError, ValueError):
            return self.translate

    def __str__(self) -> str:
        return self.own_text() + "".join(str(item) for item in self.extra)

    def to_legacy(self) -> str:
        """Render the tree as text with legacy § formatting codes."""
        parts: list[str] = []
        self._render_legacy(parts, "", frozenset(), [False])
        return "".join(parts)

    def _render_legacy(
        self,
        parts: list[str],
        parent_color: str,
        parent_styles: frozenset[str],
        formatted: list[bool],
    ) -> None:
        color = self.color or parent_color
        styles = set(parent_styles)
        for name, code in _STYLE_CODES:
            flag = getattr(self, name)
            if flag is True:
                styles.add(code)
            elif flag is False:
                styles.discard(code)

        text = self.own_text()
        if text:
            codes = legacy_color_code(color) if color else ""
            codes += "".join(f"§{code}" for _name, code in _STYLE_CODES if code in styles)
            if codes or formatted[0]:
                parts.append("§r" + codes)
                formatted[0] = bool(codes)
            parts.append(text)

        for item in self.extra:
            item._render_legacy(parts, color, frozenset(styles), formatted)  # noqa: SLF001


@dataclass(frozen=True)
class Version:
    name: str
    protocol: int


@dataclass(frozen=True)
class Player:
    name: str
    id: str


@dataclass(frozen=True)
class Players:
    max: int
    online: int
    sample: tuple[Player, ...] = ()


@dataclass(frozen=True)
class ForgeChannel:
    res: str
    version: str
    required: bool


@dataclass(frozen=True)
class ForgeMod:
    mod_id: str
    mod_marker: str


@dataclass(frozen=True)
class ForgeData:
    """Forge mod data, Minecraft Forge 1.13 and later."""

    channels: tuple[ForgeChannel, ...] = ()
    mods: tuple[ForgeMod, ...] = ()
    fml_network_version: int = 0


@dataclass(frozen=True)
class LegacyForgeMod:
    mod_id: str
    version: str


@dataclass(frozen=True)
class LegacyForgeModInfo:
    """Forge mod data, Minecraft Forge 1.7 - 1.12."""

    type: str
    mod_list: tuple[LegacyForgeMod, ...] = ()


@dataclass(frozen=True)
class StatusResponse:
    """A parsed status response.

    The document is immutable; with_latency() returns a copy carrying the
    latency measured by the client.
    """

    version: Version
    players: Players
    description: ChatComponent = field(default_factory=ChatComponent)
    favicon: str = ""
    enforces_secure_chat: bool = False
    previews_chat: bool = False
    forge_mod_info: LegacyForgeModInfo | None = None
    forge_data: ForgeData | None = None
    latency: int | None = None

    @classmethod
    def from_json(cls, raw: str) -> StatusResponse:
        """Parse the JSON string carried by a status response packet."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            msg = f"Failed to parse status response: {e}"
            raise MalformedResponseError(msg) from e
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> StatusResponse:
        if not isinstance(data, dict):
            msg = f"Status response is not a JSON object: {data!r}"
            raise MalformedResponseError(msg)
        try:
            return cls._from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            msg = f"Invalid status response: {e}"
            raise MalformedResponseError(msg) from e

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> StatusResponse:
        version = data.get("version") or {}
        players = data.get("players") or {}

        forge_mod_info = None
        if modinfo := data.get("modinfo"):
            forge_mod_info = LegacyForgeModInfo(
                type=modinfo.get("type", ""),
                mod_list=tuple(
                    LegacyForgeMod(mod_id=m.get("modid", ""), version=m.get("version", ""))
                    for m in modinfo.get("modList") or ()
                ),
            )

        forge_data = None
        if raw_forge := data.get("forgeData"):
            forge_data = ForgeData(
                channels=tuple(
                    ForgeChannel(
                        res=c.get("res", ""),
                        version=c.get("version", ""),
                        required=bool(c.get("required", False)),
                    )
                    for c in raw_forge.get("channels") or ()
                ),
                mods=tuple(
                    ForgeMod(mod_id=m.get("modId", ""), mod_marker=m.get("modmarker", ""))
                    for m in raw_forge.get("mods") or ()
                ),
                fml_network_version=int(raw_forge.get("fmlNetworkVersion", 0)),
            )

        latency = data.get("latency")
        return cls(
            version=Version(
                name=str(version.get("name", "")),
                protocol=int(version.get("protocol", 0)),
            ),
            players=Players(
                max=int(players.get("max", 0)),
                online=int(players.get("online", 0)),
                sample=tuple(
                    Player(name=p.get("name", ""), id=p.get("id", ""))
                    for p in players.get("sample") or ()
                ),
            ),
            description=ChatComponent.from_json(data.get("description")),
            favicon=data.get("favicon") or "",
            enforces_secure_chat=bool(data.get("enforcesSecureChat", False)),
            previews_chat=bool(data.get("previewsChat", False)),
            forge_mod_info=forge_mod_info,
            forge_data=forge_data,
            latency=int(latency) if latency is not None else None,
        )

    def with_latency(self, latency: int) -> StatusResponse:
        return dataclasses.replace(self, latency=latency)

    def to_dict(self) -> dict[str, Any]:
        """Convert back to the server's JSON layout, omitting empty fields."""
        players: dict[str, Any] = {
            "max": self.players.max,
            "online": self.players.online,
        }
        if self.players.sample:
            players["sample"] = [{"name": p.name, "id": p.id} for p in self.players.sample]

        data: dict[str, Any] = {
            "version": {"name": self.version.name, "protocol": self.version.protocol},
            "players": players,
            "description": self.description.to_dict(),
        }
        if self.favicon:
            data["favicon"] = self.favicon
        if self.enforces_secure_chat:
            data["enforcesSecureChat"] = True
        if self.previews_chat:
            data["previewsChat"] = True
        if self.forge_mod_info is not None:
            data["modinfo"] = {
                "type": self.forge_mod_info.type,
                "modList": [
                    {"modid": m.mod_id, "version": m.version}
                    for m in self.forge_mod_info.mod_list
                ],
            }
        if self.forge_data is not None:
            data["forgeData"] = {
                "channels": [dataclasses.asdict(c) for c in self.forge_data.channels],
                "mods": [
                    {"modId": m.mod_id, "modmarker": m.mod_marker}
                    for m in self.forge_data.mods
                ],
                "fmlNetworkVersion": self.forge_data.fml_network_version,
            }
        if self.latency is not None:
            data["latency"] = self.latency
        return data

    def to_json(self, **kwargs: Any) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, **kwargs)

    def icon(self) -> bytes:
        """Decode the favicon into PNG bytes.

        Raises ValueError if the response has no favicon or it is not valid
        base64.
        """
        if not self.favicon:
            msg = "Status response does not contain a favicon"
            raise ValueError(msg)
        encoded = self.favicon.removeprefix(FAVICON_PREFIX).replace("\n", "")
        try:
            return base64.b64decode(encoded, validate=True)
        except binascii.Error as e:
            msg = f"Failed to decode favicon: {e}"
            raise ValueError(msg) from e
