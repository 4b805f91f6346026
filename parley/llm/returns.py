"""Result snapshots produced by provider calls and by the session."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from parley.llm.body import EMPTY_BODY, Body, BodyBuilder
from parley.llm.types import Metrics
from parley.types import CallStatus, ErrorKind, Origin, RuntimeMessage, Severity

if TYPE_CHECKING:
    from parley.llm.providers.base import Request


@dataclass(frozen=True)
class Return:
    """
    Immutable outcome of one call: a body plus diagnostics.

    Parameters
    ----------
    body:
        The interactions produced (provider returns) or the full history
        (session returns).  ``body.new_indices`` marks the current delta.
    status:
        ``STREAMING`` for partial stream states, ``FINISHED`` otherwise.
    messages:
        Runtime messages in emission order.  ``success`` is ``False`` as
        soon as one of them has error severity.
    error_kind:
        Classification of the failure for terminal error returns.
    """

    body: Body = EMPTY_BODY
    status: CallStatus = CallStatus.FINISHED
    messages: tuple[RuntimeMessage, ...] = ()
    error_kind: ErrorKind | None = None
    request: Request | None = field(default=None, compare=False, repr=False)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_body(
        cls,
        body: Body,
        *,
        status: CallStatus = CallStatus.FINISHED,
        request: Request | None = None,
        messages: tuple[RuntimeMessage, ...] | list[RuntimeMessage] = (),
    ) -> Return:
        return cls(body=body, status=status, messages=tuple(messages), request=request)

    @classmethod
    def error(
        cls,
        message: str,
        kind: ErrorKind = ErrorKind.PROVIDER,
        origin: Origin = Origin.PROVIDER,
        *,
        body: Body | None = None,
        request: Request | None = None,
    ) -> Return:
        """
        Build a failed return.

        When *body* is given the error interaction is appended to it (its
        new markers are kept); otherwise the body holds just the error.
        """
        builder = BodyBuilder.from_body(body)
        builder.add_error(message)
        return cls(
            body=builder.build(),
            status=CallStatus.FINISHED,
            messages=(RuntimeMessage(Severity.ERROR, origin, message),),
            error_kind=kind,
            request=request,
        )

    # ------------------------------------------------------------------
    # Derived
    # ------------------------------------------------------------------

    @property
    def success(self) -> bool:
        return not any(m.severity == Severity.ERROR for m in self.messages)

    @property
    def metrics(self) -> Metrics:
        return self.body.metrics

    @property
    def error_message(self) -> str | None:
        errors = [m.text for m in self.messages if m.severity == Severity.ERROR]
        return "; ".join(errors) if errors else None

    @property
    def text(self) -> str | None:
        """Content of the last text interaction, if any."""
        return self.body.last_text()

    def new_interactions(self):
        return self.body.new_interactions()

    def with_message(self, message: RuntimeMessage, kind: ErrorKind | None = None) -> Return:
        return replace(
            self,
            messages=self.messages + (message,),
            error_kind=kind if kind is not None else self.error_kind,
        )

    def with_status(self, status: CallStatus) -> Return:
        return replace(self, status=status)
