class NoVoucherAvailable(Exception):
    """No unused voucher left for the requested product."""

    def __init__(self, product_name: str | None):
        self.product_name = product_name
        super().__init__(f"no voucher available for {product_name!r}")


class ReservationFailed(Exception):
    """The store failed mid-reservation; the voucher was released."""


class CallbackPayloadError(ValueError):
    """The gateway callback body could not be normalized."""


class InvalidSignature(Exception):
    pass


class DuplicateTransaction(Exception):
    """A unique ledger key (temp id or gateway id) is already taken."""
