import uuid
from datetime import datetime
from typing import Callable, Optional

from .lifecycle import utc_now


class IdGenerator:
    """Produces transaction ids and invoice numbers for payments.

    The timestamp keeps ids sortable for humans; the uuid4 suffix keeps them
    unique when two purchases land in the same second.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utc_now

    def _suffix(self) -> str:
        return uuid.uuid4().hex[:12].upper()

    def transaction_id(self) -> str:
        return f"TXN{self.clock().strftime('%Y%m%d%H%M%S')}-{self._suffix()}"

    def invoice_number(self) -> str:
        return f"INV{self.clock().strftime('%Y%m%d')}-{self._suffix()}"
