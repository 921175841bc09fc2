from typing import List, Tuple

from .config import MAX_CHAT_TURNS
from .schema import Turn


class ChatHistory:
    """Bounded (user, assistant) turn memory for the interactive session."""

    def __init__(self, max_turns: int = MAX_CHAT_TURNS):
        if max_turns < 1:
            raise ValueError("max_turns must be >= 1")
        self.max_turns = max_turns
        self.messages: List[Turn] = []

    def append(self, user_text: str, assistant_text: str):
        self.messages.append(Turn(role="user", content=user_text))
        self.messages.append(Turn(role="assistant", content=assistant_text))
        self.prune()

    def prune(self):
        # drop whole leading turns; stop if there is no second user entry to cut at
        while len(self.messages) > 2 * self.max_turns:
            cut = self._second_user_index()
            if cut is None:
                break
            del self.messages[:cut]

    def _second_user_index(self):
        seen = 0
        for i, m in enumerate(self.messages):
            if m.role == "user":
                seen += 1
                if seen == 2:
                    return i
        return None

    def turns(self) -> List[Turn]:
        return list(self.messages)

    def pairs(self) -> List[Tuple[str, str]]:
        out = []
        for i in range(0, len(self.messages) - 1, 2):
            out.append((self.messages[i].content or "", self.messages[i + 1].content or ""))
        return out

    def clear(self):
        self.messages.clear()

    def __len__(self) -> int:
        return len(self.messages)
