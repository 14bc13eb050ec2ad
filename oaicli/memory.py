"""Process-lifetime key/value memory backing the `memory` tool."""

NOT_FOUND = "Not found."


class MemoryStore:
    """String-to-string mapping owned by one executor.

    Nothing is persisted; a fresh store starts empty.
    """

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def store(self, key: str, value: str) -> None:
        self._data[key] = value

    def recall(self, key: str) -> str:
        """Return the stored value, or the NOT_FOUND sentinel."""
        return self._data.get(key, NOT_FOUND)
