"""
Domain errors for the copy-trading worker

All of them are ValueError subclasses: callers that only care about
"bad input or bad state" can keep catching ValueError.
"""


class PnLInputError(ValueError):
    """A PnL input was missing, zero, negative or not a finite number"""


class InvalidTokenIdError(ValueError):
    """Token id is not a base58-encoded 32-byte public key"""


class PositionExistsError(ValueError):
    """An open position already exists for the token"""


class PositionNotFoundError(ValueError):
    """No open position for the token (never opened, or already closed)"""


class CorruptPositionError(ValueError):
    """An open position record has unusable numeric fields"""

    def __init__(self, token_id: str, fields: list):
        self.token_id = token_id
        self.fields = list(fields)
        super().__init__(f"Position {token_id} has invalid fields: {', '.join(self.fields)}")
