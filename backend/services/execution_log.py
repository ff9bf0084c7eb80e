from collections import OrderedDict, deque
from itertools import count
from datetime import datetime, timezone
from threading import Lock
from typing import List, Optional

ENTRY_TYPES = ("node_start", "transition", "waiting_input", "error", "flow_complete")


class ExecutionLog:
    """
    Log de execução em memória, limitado por conversa (max_entries) e no total de
    conversas (max_conversations). A conversa menos recentemente usada é descartada primeiro.
    Apenas diagnóstico: nunca é lido de volta pela execução.
    """

    def __init__(self, max_entries: int = 200, max_conversations: int = 100):
        self.max_entries = max_entries
        self.max_conversations = max_conversations
        self._buffers: "OrderedDict[int, deque]" = OrderedDict()
        self._lock = Lock()
        self._seq = count()

    def append(self, conversation_id: int, entry_type: str, message: str = "", **fields) -> dict:
        if entry_type not in ENTRY_TYPES:
            raise ValueError(f"Unknown execution log entry type: {entry_type}")

        entry = {
            "at": datetime.now(timezone.utc),
            "type": entry_type,
            "conversationId": conversation_id,
            "message": message,
        }
        entry["seq"] = next(self._seq)
        entry.update({k: v for k, v in fields.items() if v is not None})
        if "variables" in entry:
            entry["variables"] = dict(entry["variables"])

        with self._lock:
            buffer = self._buffers.get(conversation_id)
            if buffer is None:
                buffer = deque(maxlen=self.max_entries)
                self._buffers[conversation_id] = buffer
            self._buffers.move_to_end(conversation_id)
            buffer.append(entry)

            while len(self._buffers) > self.max_conversations:
                self._buffers.popitem(last=False)

        return entry

    def query(self, conversation_id: Optional[int] = None, limit: int = 100) -> List[dict]:
        """Entradas mais recentes primeiro. Sem conversation_id, consulta todas as conversas."""
        with self._lock:
            if conversation_id is not None:
                entries = list(self._buffers.get(conversation_id, ()))
            else:
                entries = [e for buffer in self._buffers.values() for e in buffer]

        entries.sort(key=lambda e: e["seq"], reverse=True)
        return entries[:limit] if limit else entries

    def clear(self, conversation_id: Optional[int] = None):
        with self._lock:
            if conversation_id is None:
                self._buffers.clear()
            else:
                self._buffers.pop(conversation_id, None)

    def __len__(self):
        return len(self._buffers)
