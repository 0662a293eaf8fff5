import logging
from collections.abc import Callable

log = logging.getLogger("timeflow.identity")


class IdentityProvider:
    """Current participant address, or None when nobody is connected.

    Can change at any time; listeners are told the new value.
    """

    def __init__(self, address: str | None = None):
        self._address = address
        self._listeners: list[Callable[[str | None], None]] = []

    @property
    def address(self) -> str | None:
        return self._address

    def set_address(self, address: str | None) -> None:
        if address == self._address:
            return
        log.info("Participant changed: %s -> %s", self._address, address)
        self._address = address
        for listener in list(self._listeners):
            try:
                listener(address)
            except Exception:
                log.exception("identity listener failed")

    def on_change(self, listener: Callable[[str | None], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
