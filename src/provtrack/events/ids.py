"""Time-sortable event identifiers.

Format: ``evt_<millis base36, 9 chars>_<sequence base36, 4 chars><random hex, 7 chars>``.
The millisecond component never moves backwards within a process and the
sequence breaks ties inside one millisecond, so ids sort by creation order.
"""

import string
import threading
import time
from uuid import uuid4

_ALPHABET = string.digits + string.ascii_lowercase


def to_base36(value: int, width: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits)).rjust(width, "0")


class EventIdGenerator:
    def __init__(self, clock=time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._last_millis = 0
        self._sequence = 0

    def __call__(self) -> str:
        with self._lock:
            millis = int(self._clock() * 1000)
            if millis <= self._last_millis:
                millis = self._last_millis
                self._sequence += 1
                if self._sequence >= 36**4:
                    millis += 1
                    self._sequence = 0
            else:
                self._sequence = 0
            self._last_millis = millis
            sequence = self._sequence
        return f"evt_{to_base36(millis, 9)}_{to_base36(sequence, 4)}{uuid4().hex[:7]}"


new_event_id = EventIdGenerator()
