"""Turn aggregation for live transcription.

Provides:
- TurnRecord: frozen dataclass holding one finished user/assistant exchange
- TurnAggregator: two growing transcript buffers (user, assistant) that are
  snapshotted and emptied when the server signals the end of a turn

No external dependencies beyond stdlib. Importable independently of voice_link.py.
"""

import time
from dataclasses import dataclass, field


@dataclass(frozen=True)
class TurnRecord:
    """One completed turn. Either side may be empty."""
    user_text: str
    assistant_text: str
    completed_at: float = field(default_factory=time.time)


class TurnAggregator:
    """Accumulates incremental transcript fragments per speaker.

    Fragments are appended verbatim; the server includes its own spacing.
    """

    def __init__(self):
        self._user = []
        self._assistant = []

    @property
    def user_text(self) -> str:
        return "".join(self._user)

    @property
    def assistant_text(self) -> str:
        return "".join(self._assistant)

    @property
    def is_empty(self) -> bool:
        return not self._user and not self._assistant

    def append_user(self, fragment: str) -> str:
        """Add a user fragment and return the running user transcript."""
        if fragment:
            self._user.append(fragment)
        return self.user_text

    def append_assistant(self, fragment: str) -> str:
        """Add an assistant fragment and return the running assistant transcript."""
        if fragment:
            self._assistant.append(fragment)
        return self.assistant_text

    def complete_turn(self) -> TurnRecord:
        """Snapshot both transcripts, then empty them."""
        record = TurnRecord(self.user_text, self.assistant_text)
        self.reset()
        return record

    def reset(self):
        self._user.clear()
        self._assistant.clear()
