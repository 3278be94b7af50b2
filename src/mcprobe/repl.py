"""Interactive shell using prompt_toolkit."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from prompt_toolkit.key_binding import KeyBindings

if TYPE_CHECKING:
    from prompt_toolkit.key_binding.key_processor import KeyPressEvent

    from mcprobe.config import AppConfig, ProbeDefaults
    from mcprobe.fingerprint import Fingerprinter

from mcprobe.address import Address, AddressError
from mcprobe.cli import probe, query_status, render
from mcprobe.client import PongMismatchError, SlpClient
from mcprobe.completer import SHELL_COMMANDS, ProbeCompleter
from mcprobe.config import HISTORY_FILE, ensure_config_dir
from mcprobe.fingerprint import fingerprint_with_protocol
from mcprobe.protocol import ProbeError

log = logging.getLogger(__name__)

EXIT_COMMANDS = frozenset({"exit", "quit"})

_HELP = """\
Commands:
  status [server]       query version, players and description
  ping [server]         measure latency
  fingerprint [server]  identify the server software
  probe [server]        status, latency and fingerprint
  servers               list configured servers
  exit, quit            leave the shell
[server] is a configured name, host, or host:port; it defaults to the
configured default server."""


def is_exit(line: str) -> bool:
    """Whether a command line asks to leave the shell, in any letter case."""
    words = line.split()
    return bool(words) and words[0].lower() in EXIT_COMMANDS


def _create_key_bindings() -> KeyBindings:
    """Create custom key bindings for the shell.

    Ctrl+C and Ctrl+D abandon a non-empty line and exit on an empty one.
    """
    kb = KeyBindings()

    @kb.add("c-c")
    def _(event: KeyPressEvent) -> None:
        buffer = event.app.current_buffer
        if buffer.text:
            print()
            buffer.reset()
            event.app.renderer.reset()
        else:
            event.app.exit(exception=KeyboardInterrupt)

    @kb.add("c-d")
    def _(event: KeyPressEvent) -> None:
        buffer = event.app.current_buffer
        if buffer.text:
            print()
            buffer.reset()
            event.app.renderer.reset()
        else:
            event.app.exit(exception=EOFError)

    return kb


class Shell:
    """Executes shell command lines against live servers."""

    def __init__(
        self,
        config: AppConfig,
        options: ProbeDefaults,
        fingerprinter: Fingerprinter,
    ) -> None:
        self.config = config
        self.options = options
        self.fingerprinter = fingerprinter

    def execute(self, line: str) -> str | None:
        """Run one command line and return the text to print.

        Probe failures are reported in the returned text rather than raised,
        so one unreachable server does not end the session.
        """
        command, *args = line.split()
        command = command.lower()
        if command not in SHELL_COMMANDS:
            return f"Unknown command: {command} (type 'help' for commands)"
        if command == "help":
            return _HELP
        if command == "servers":
            return self._list_servers()
        if command in EXIT_COMMANDS:
            return None

        try:
            address = self._resolve(args[0] if args else None)
        except AddressError as e:
            return f"Error: {e}"
        if address is None:
            return f"Usage: {command} <server>"

        try:
            return self._run(command, address)
        except ProbeError as e:
            log.debug("%s %s failed", command, address, exc_info=True)
            return f"{command} failed: {e}"

    def _run(self, command: str, address: Address) -> str:
        opts = self.options
        if command == "status":
            response = query_status(address, opts)
            return render(response, None, as_json=False, color=opts.color)
        if command == "ping":
            with SlpClient(
                address, timeout=opts.timeout, protocol=opts.protocol, srv=opts.srv
            ) as client:
                try:
                    latency = client.ping()
                except PongMismatchError as e:
                    return f"latency: {e.latency}ms ({e})"
            return f"latency: {latency}ms"
        if command == "fingerprint":
            response = query_status(address, opts)
            result = fingerprint_with_protocol(
                address,
                response.version.protocol,
                timeout=opts.timeout,
                srv=opts.srv and not address.srv_resolved,
                fingerprinter=self.fingerprinter,
            )
            if result.reason is not None:
                return f"software: {result.label} ({result.reason})"
            return f"software: {result.label}"

        response, result = probe(address, opts, self.fingerprinter)
        return render(response, result, as_json=False, color=opts.color)

    def _resolve(self, server_arg: str | None) -> Address | None:
        if server_arg is None:
            server_arg = self.config.default_server
            if server_arg is None:
                return None
        if server_arg in self.config.servers:
            return Address.parse(self.config.servers[server_arg].address)
        return Address.parse(server_arg)

    def _list_servers(self) -> str:
        if not self.config.servers:
            return "No servers configured."
        lines = []
        for key, srv in self.config.servers.items():
            marker = "*" if key == self.config.default_server else " "
            lines.append(f"{marker} {key}: {srv.name} ({srv.address})")
        return "\n".join(lines)


def run_repl(
    config: AppConfig,
    options: ProbeDefaults,
    fingerprinter: Fingerprinter,
) -> None:
    """Run the interactive shell loop."""
    ensure_config_dir()

    shell = Shell(config, options, fingerprinter)
    session: PromptSession[str] = PromptSession(
        history=FileHistory(str(HISTORY_FILE)),
        completer=ProbeCompleter(config.servers),
        complete_while_typing=False,
        key_bindings=_create_key_bindings(),
    )

    print("Type 'help' for commands, Ctrl+D or 'exit' to quit.\n")
    while True:
        try:
            text = session.prompt(HTML("<ansigreen>mcprobe</ansigreen>> ")).strip()
        except (EOFError, KeyboardInterrupt):
            print("\nGoodbye.")
            break

        if not text:
            continue
        if is_exit(text):
            print("Goodbye.")
            break

        output = shell.execute(text)
        if output:
            print(output)
