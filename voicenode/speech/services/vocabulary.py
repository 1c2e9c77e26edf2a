from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence


@dataclass(frozen=True)
class PhraseCommand:
    match: str
    topic: str


DEFAULT_COMMANDS: Sequence[PhraseCommand] = (
    PhraseCommand("licht an", "LivingRoomLightOn"),
    PhraseCommand("licht aus", "LivingRoomLightOff"),
)


def commands_from_config(items: Optional[Iterable[Dict]]) -> List[PhraseCommand]:
    if not items:
        return list(DEFAULT_COMMANDS)
    return [PhraseCommand(str(i["match"]), str(i["topic"])) for i in items]


class Vocabulary:
    """Maps recognised text to an outbound topic.

    The hotword is compared verbatim and published as its own topic; the
    other commands match as case-insensitive substrings, first match wins.
    """

    def __init__(self, hotword: str, commands: Optional[Sequence[PhraseCommand]] = None):
        self.hotword = hotword
        self.commands = list(DEFAULT_COMMANDS if commands is None else commands)

    def match(self, text: str) -> Optional[str]:
        if not text:
            return None
        if self.hotword and text == self.hotword:
            return self.hotword
        lowered = text.lower()
        for cmd in self.commands:
            if cmd.match.lower() in lowered:
                return cmd.topic
        return None
