"""
Error taxonomy shared by the scheduling, delivery and alerting layers.

Transient failures are not a class of their own: they are recognised by
core.retry.is_retryable_error from whatever the store or mailer raised.
"""


class ValidationError(ValueError):
    """Rejected input (bad alert config, invalid cron, missing schedule fields)."""

    @classmethod
    def from_pydantic(cls, error, context: str) -> "ValidationError":
        """Flatten a pydantic ValidationError into one readable message."""
        problems = []
        for item in error.errors():
            location = ".".join(str(part) for part in item.get("loc", ())) or "value"
            problems.append(f"{location}: {item.get('msg')}")
        return cls(f"Invalid {context}: {'; '.join(problems)}")


class NotFoundError(LookupError):
    """A referenced entity does not exist."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class DeliveryError(RuntimeError):
    """A report delivery could not be carried out."""
