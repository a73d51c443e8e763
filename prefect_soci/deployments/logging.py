import dataclasses
import logging
from typing import Optional


@dataclasses.dataclass(frozen=True)
class LogContext:
    """
    Fields identifying what an indexing run is working on.
    """
    registry_url: Optional[str] = None
    repository: Optional[str] = None
    image_digest: Optional[str] = None
    index_digest: Optional[str] = None

    def with_fields(self, **fields) -> "LogContext":
        return dataclasses.replace(self, **fields)

    def as_dict(self) -> dict:
        return {key: value for key, value in dataclasses.asdict(self).items() if value is not None}


class ContextLoggerAdapter(logging.LoggerAdapter):
    """
    Prefix messages with the fields of a LogContext and attach them to the record.
    """

    def __init__(self, logger: logging.Logger, context: LogContext):
        super().__init__(logger, context.as_dict())
        self.context = context

    def bind(self, **fields) -> "ContextLoggerAdapter":
        return ContextLoggerAdapter(self.logger, self.context.with_fields(**fields))

    def process(self, msg, kwargs):
        fields = self.context.as_dict()
        kwargs["extra"] = {**fields, **(kwargs.get("extra") or {})}
        if not fields:
            return msg, kwargs

        prefix = " ".join(f"{key}={value}" for key, value in fields.items())
        return f"[{prefix}] {msg}", kwargs
