"""Server address parsing and SRV record resolution."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass

import dns.exception
import dns.resolver

from mcprobe.protocol import ProbeError

log = logging.getLogger(__name__)

DEFAULT_PORT = 25565
_SRV_SERVICE = "_minecraft._tcp"


class AddressError(ProbeError, ValueError):
    """Raised when a server address cannot be parsed."""


@dataclass
class Address:
    """A Minecraft server address.

    ``host`` and ``port`` are what the user asked for and what the handshake
    announces. ``srv_host``/``srv_port`` are set once an SRV record has been
    resolved and take precedence when connecting.
    """

    host: str
    port: int = DEFAULT_PORT
    explicit_port: bool = False
    srv_host: str | None = None
    srv_port: int | None = None

    @classmethod
    def parse(cls, raw: str) -> Address:
        """Parse ``host``, ``host:port``, ``[v6]:port`` or a bare IPv6 literal."""
        raw = raw.strip()
        if not raw:
            msg = "Address cannot be empty"
            raise AddressError(msg)

        if raw.startswith("["):
            host, sep, rest = raw[1:].partition("]")
            if not sep or (rest and not rest.startswith(":")):
                msg = f"Invalid address: {raw}"
                raise AddressError(msg)
            port_str = rest[1:] if rest else None
        elif raw.count(":") > 1:
            # Bare IPv6 literal, no port possible without brackets
            host, port_str = raw, None
        elif ":" in raw:
            host, port_str = raw.split(":", 1)
        else:
            host, port_str = raw, None

        if not host:
            msg = f"Invalid address, missing host: {raw}"
            raise AddressError(msg)

        if port_str is None:
            return cls(host=host)
        return cls(host=host, port=_parse_port(port_str), explicit_port=True)

    @property
    def is_ip(self) -> bool:
        """Whether the host is an IP literal rather than a hostname."""
        try:
            ipaddress.ip_address(self.host)
        except ValueError:
            return False
        return True

    @property
    def srv_resolved(self) -> bool:
        return self.srv_host is not None

    @property
    def target(self) -> tuple[str, int]:
        """The (host, port) pair to open a connection to."""
        if self.srv_host is not None and self.srv_port is not None:
            return self.srv_host, self.srv_port
        return self.host, self.port

    def resolve_srv(self, timeout: float = 5.0) -> bool:
        """Look up the server's SRV record and remember its target.

        Skipped for IP literals and for addresses with an explicit port.
        Lookup failures are not errors: the address is simply left as is.

        Returns True if an SRV record was applied.
        """
        if self.explicit_port or self.is_ip:
            return False

        qname = f"{_SRV_SERVICE}.{self.host}"
        try:
            answer = dns.resolver.resolve(qname, "SRV", lifetime=timeout)
        except dns.exception.DNSException:
            log.debug("No SRV record for %s", qname, exc_info=True)
            return False

        records = sorted(answer, key=lambda r: (r.priority, -r.weight))
        if not records:
            return False

        record = records[0]
        self.srv_host = record.target.to_text(omit_final_dot=True)
        self.srv_port = int(record.port)
        log.debug("SRV record for %s points to %s", self.host, self)
        return True

    def __str__(self) -> str:
        host, port = self.target
        if ":" in host:
            return f"[{host}]:{port}"
        return f"{host}:{port}"


def _parse_port(raw: str) -> int:
    try:
        port = int(raw)
    except ValueError:
        msg = f"Invalid port: {raw}"
        raise AddressError(msg) from None
    if not 0 < port < 2**16:
        msg = f"Port out of range: {port}"
        raise AddressError(msg)
    return port
