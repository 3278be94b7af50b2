"""Command and server name completion for the interactive shell."""

from __future__ import annotations

from typing import TYPE_CHECKING

from prompt_toolkit.completion import Completer, Completion

if TYPE_CHECKING:
    from collections.abc import Iterable

    from prompt_toolkit.completion import CompleteEvent
    from prompt_toolkit.document import Document

# Shell commands and whether they take a server argument
SHELL_COMMANDS: dict[str, bool] = {
    "status": True,
    "ping": True,
    "fingerprint": True,
    "probe": True,
    "servers": False,
    "help": False,
    "exit": False,
    "quit": False,
}


class ProbeCompleter(Completer):
    """Completes shell commands, then configured server names."""

    def __init__(self, servers: Iterable[str] = ()) -> None:
        self.servers = sorted(servers)

    def get_completions(
        self,
        document: Document,
        complete_event: CompleteEvent,  # noqa: ARG002
    ) -> Iterable[Completion]:
        text = document.text_before_cursor
        words = text.split()
        typing_new_word = text.endswith(" ") if text else True

        if not words or (len(words) == 1 and not typing_new_word):
            yield from _matching(SHELL_COMMANDS, words[0] if words else "")
            return

        # Only the first argument of a server command is completed
        takes_server = SHELL_COMMANDS.get(words[0].lower(), False)
        if not takes_server:
            return
        if typing_new_word and len(words) == 1:
            yield from _matching(self.servers, "")
        elif not typing_new_word and len(words) == 2:  # noqa: PLR2004
            yield from _matching(self.servers, words[1])


def _matching(candidates: Iterable[str], prefix: str) -> Iterable[Completion]:
    prefix_lower = prefix.lower()
    for candidate in candidates:
        if candidate.lower().startswith(prefix_lower):
            yield Completion(candidate, start_position=-len(prefix))
