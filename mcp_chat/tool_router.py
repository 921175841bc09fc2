from dataclasses import dataclass
from typing import Dict, List, Optional

TOOL_ID_SEPARATOR = "_"


def make_tool_id(server_id: str, local_name: str) -> str:
    return f"{server_id}{TOOL_ID_SEPARATOR}{local_name}"


@dataclass(frozen=True)
class NamespaceEntry:
    server_id: str
    local_name: str


class ToolNamespace:
    """Maps a namespaced tool identifier back to (server id, local tool name).

    Two servers exposing the same local name get distinct identifiers, so the
    mapping stays one-to-one. Only the server manager writes to it.
    """

    def __init__(self):
        self._entries: Dict[str, NamespaceEntry] = {}

    def register(self, identifier: str, server_id: str, local_name: str) -> None:
        self._entries[identifier] = NamespaceEntry(server_id, local_name)

    def resolve(self, identifier: str) -> Optional[NamespaceEntry]:
        return self._entries.get(identifier)

    def unregister(self, identifier: str) -> None:
        self._entries.pop(identifier, None)

    def unregister_all_for_server(self, server_id: str) -> List[str]:
        gone = [k for k, v in self._entries.items() if v.server_id == server_id]
        for k in gone:
            del self._entries[k]
        return gone

    def identifiers(self) -> List[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._entries

    def __len__(self) -> int:
        return len(self._entries)
