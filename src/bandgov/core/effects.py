"""Effect Registry, Validator and Executor for GOVERNANCE/ACTION proposals.

Effects are declarative ``{type, payload, order?}`` instructions stored on a
proposal. They are validated when the proposal is created or resubmitted,
and executed only after the proposal is approved:

- ``EffectRegistry`` maps effect types to handlers and subtypes to the
  effect types they allow. Built once at startup, frozen, then injected.
- ``validate_effects`` checks shape, subtype whitelist and handler rules.
  It never raises; problems come back as strings.
- ``execute_effects`` runs a batch inside one repository transaction.
  Any failure rolls the whole batch back.
- ``execute_and_log_effects`` is the only path from an approved proposal to
  the data store. It writes exactly one execution log row per attempt.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from bandgov.core.errors import ConflictError, DuplicateHandlerError, EffectExecutionError
from bandgov.models.governance import (
    EFFECT_EXECUTION_TYPES,
    EffectsExecutionResult,
    EffectsValidationResult,
    ProposalEffect,
)

if TYPE_CHECKING:
    from bandgov.db.models import ProposalRow
    from bandgov.db.repository import Repository

logger = logging.getLogger(__name__)

PayloadT = TypeVar("PayloadT", bound=BaseModel)

STRUCTURE_ERROR = (
    'Effects must be an array of objects with "type" (string) and "payload" (object) properties'
)


@dataclass
class EffectContext:
    """What a handler knows about the proposal it is acting for.

    ``proposal_id`` and ``executed_by_id`` are None while validating at
    creation time; they are always set during execution.
    """

    band_id: str
    repo: Repository
    proposal_id: str | None = None
    executed_by_id: str | None = None


# --- Handlers ---


def describe_payload_errors(effect_type: str, exc: ValidationError) -> list[str]:
    """Turn a pydantic ValidationError into ``"TYPE: field problem"`` strings."""
    messages: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "payload"
        kind = err["type"]
        ctx = err.get("ctx") or {}
        if kind == "missing" or (kind == "string_too_short" and ctx.get("min_length") == 1):
            text = f"{loc} is required"
        elif kind == "extra_forbidden":
            text = f'Field "{loc.rsplit(".", 1)[-1]}" is not allowed'
        elif kind == "literal_error":
            text = f"{loc} must be {ctx.get('expected')}, got {err.get('input')!r}"
        elif kind == "string_too_long":
            text = f"{loc} must be {ctx.get('max_length')} characters or less"
        elif kind == "bool_type":
            text = f"{loc} must be a boolean"
        else:
            text = f"{loc}: {err['msg']}"
        messages.append(f"{effect_type}: {text}")
    return messages


class EffectHandler(ABC, Generic[PayloadT]):
    """Validate/execute pair for one effect type.

    Subclasses set ``effect_type`` and ``payload_model`` and implement
    ``check`` (business rules against current state) and ``apply`` (the
    write). The raw payload dict is narrowed into ``payload_model`` first,
    so ``check`` and ``apply`` only ever see a typed payload.
    """

    effect_type: ClassVar[str]
    payload_model: ClassVar[type[BaseModel]]

    def parse(self, payload: dict[str, Any]) -> PayloadT:
        """Narrow a raw payload. Raises pydantic.ValidationError."""
        return self.payload_model.model_validate(payload)  # type: ignore[return-value]

    async def validate(self, payload: dict[str, Any], context: EffectContext) -> list[str]:
        try:
            parsed = self.parse(payload)
        except ValidationError as exc:
            return describe_payload_errors(self.effect_type, exc)
        return await self.check(parsed, context)

    async def execute(self, payload: dict[str, Any], context: EffectContext) -> None:
        await self.apply(self.parse(payload), context)

    async def check(self, payload: PayloadT, context: EffectContext) -> list[str]:
        return []

    @abstractmethod
    async def apply(self, payload: PayloadT, context: EffectContext) -> None: ...


# --- Registry ---


class EffectRegistry:
    """Effect handlers by type, and allowed effect types by subtype.

    Populated at startup and then frozen. Registering a type twice raises
    ``DuplicateHandlerError`` unless the caller passes ``replace=True`` or
    the registry was built with ``allow_override=True``.
    """

    def __init__(self, allow_override: bool = False) -> None:
        self._handlers: dict[str, EffectHandler[Any]] = {}
        self._subtypes: dict[str, list[str]] = {}
        self._frozen = False
        self.allow_override = allow_override

    def _ensure_mutable(self) -> None:
        if self._frozen:
            msg = "Effect registry is frozen; register handlers before serving requests"
            raise RuntimeError(msg)

    def register(self, handler: EffectHandler[Any], *, replace: bool = False) -> None:
        """Register a handler under its ``effect_type``."""
        self._ensure_mutable()
        effect_type = handler.effect_type
        if effect_type in self._handlers:
            if not (replace or self.allow_override):
                msg = f'A handler for effect type "{effect_type}" is already registered'
                raise DuplicateHandlerError(msg)
            logger.warning("effect_handler_replaced type=%s", effect_type)
        self._handlers[effect_type] = handler
        logger.info("effect_handler_registered type=%s", effect_type)

    def register_subtype_effects(self, subtype: str, allowed_types: list[str]) -> None:
        """Declare which effect types a subtype allows."""
        self._ensure_mutable()
        self._subtypes[subtype] = list(allowed_types)
        logger.info("effect_subtype_registered subtype=%s types=%d", subtype, len(allowed_types))

    def get_handler(self, effect_type: str) -> EffectHandler[Any] | None:
        return self._handlers.get(effect_type)

    def get_allowed_effects_for_subtype(self, subtype: str) -> list[str] | None:
        """Allowed effect types for ``subtype``, or None if it was never registered."""
        allowed = self._subtypes.get(subtype)
        return list(allowed) if allowed is not None else None

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def handler_types(self) -> list[str]:
        return sorted(self._handlers)

    @property
    def subtypes(self) -> list[str]:
        return sorted(self._subtypes)


# --- Validation ---


def parse_effects(raw: object) -> list[ProposalEffect] | None:
    """Check the stored/submitted shape of an effects list.

    Returns None if ``raw`` is not a list of objects that each have a string
    ``type`` and an object ``payload``. One bad entry fails the whole list.
    """
    if not isinstance(raw, list):
        return None
    effects: list[ProposalEffect] = []
    for entry in raw:
        if isinstance(entry, ProposalEffect):
            effects.append(entry)
            continue
        if not isinstance(entry, dict):
            return None
        if not isinstance(entry.get("type"), str) or not isinstance(entry.get("payload"), dict):
            return None
        order = entry.get("order")
        if order is not None and (isinstance(order, bool) or not isinstance(order, int)):
            return None
        effects.append(ProposalEffect(type=entry["type"], payload=entry["payload"], order=order))
    return effects


async def validate_effects(
    registry: EffectRegistry,
    effects: object,
    execution_type: str,
    execution_subtype: str | None,
    context: EffectContext,
) -> EffectsValidationResult:
    """Validate declared effects for a proposal.

    Checked in order: execution type allows effects at all, GOVERNANCE has
    them, structure, non-empty, subtype whitelist (unknown subtype is only a
    warning), then each effect's handler. Warnings never block.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if execution_type not in EFFECT_EXECUTION_TYPES:
        if effects is not None:
            errors.append(
                "Effects are only allowed for GOVERNANCE and ACTION proposal types, "
                f"not {execution_type}"
            )
        return EffectsValidationResult(valid=not errors, errors=errors, warnings=warnings)

    if effects is None:
        if execution_type == "GOVERNANCE":
            errors.append("Effects are required for GOVERNANCE proposals")
        return EffectsValidationResult(valid=not errors, errors=errors, warnings=warnings)

    parsed = parse_effects(effects)
    if parsed is None:
        return EffectsValidationResult(valid=False, errors=[STRUCTURE_ERROR], warnings=warnings)

    if not parsed:
        errors.append("At least one effect is required")
        return EffectsValidationResult(valid=False, errors=errors, warnings=warnings)

    if execution_subtype:
        allowed = registry.get_allowed_effects_for_subtype(execution_subtype)
        if allowed is None:
            warnings.append(
                f'Unknown execution subtype "{execution_subtype}". '
                "Effects will be validated at execution time."
            )
        else:
            for effect in parsed:
                if effect.type not in allowed:
                    errors.append(
                        f'Effect type "{effect.type}" is not allowed for subtype '
                        f'"{execution_subtype}". Allowed types: {", ".join(allowed)}'
                    )

    for effect in parsed:
        handler = registry.get_handler(effect.type)
        if handler is None:
            errors.append(f'Unknown effect type "{effect.type}". No handler registered.')
            continue
        errors.extend(await handler.validate(effect.payload, context))

    return EffectsValidationResult(valid=not errors, errors=errors, warnings=warnings)


# --- Execution ---


async def execute_effects(
    registry: EffectRegistry,
    repo: Repository,
    effects: list[ProposalEffect],
    context: EffectContext,
) -> EffectsExecutionResult:
    """Execute a batch of effects atomically, ordered by ``order`` (missing = 0).

    Each handler re-validates against the in-transaction state right before
    it runs, since earlier effects in the batch and anything that happened
    since creation may have changed the band. The first failure rolls back
    every write in the batch.
    """
    ordered = sorted(effects, key=lambda e: e.order or 0)
    applied: list[ProposalEffect] = []
    try:
        async with repo.transaction():
            for effect in ordered:
                handler = registry.get_handler(effect.type)
                if handler is None:
                    msg = f'No handler registered for effect type "{effect.type}"'
                    raise EffectExecutionError(msg)
                errors = await handler.validate(effect.payload, context)
                if errors:
                    raise EffectExecutionError("; ".join(errors))
                await handler.execute(effect.payload, context)
                applied.append(effect)
    except Exception as exc:  # Any handler failure aborts the batch; reported, not raised
        error = str(exc) or type(exc).__name__
        logger.warning(
            "effects_rolled_back proposal=%s applied=%d total=%d error=%s",
            context.proposal_id,
            len(applied),
            len(ordered),
            error,
        )
        return EffectsExecutionResult(success=False, rolled_back=applied, error=error)

    logger.info("effects_executed proposal=%s count=%d", context.proposal_id, len(applied))
    return EffectsExecutionResult(success=True, effects_executed=applied)


async def execute_and_log_effects(
    registry: EffectRegistry,
    repo: Repository,
    proposal: ProposalRow,
    executed_by_id: str,
) -> EffectsExecutionResult:
    """Execute an approved proposal's effects and record the attempt.

    Writes exactly one execution log row whatever the outcome, and stamps the
    proposal with ``effects_executed_at`` or ``execution_error``. Raises
    ConflictError if the effects already ran.
    """
    if proposal.effects_executed_at is not None:
        msg = f"Effects for proposal {proposal.id} have already been executed"
        raise ConflictError(msg)

    proposal_id = proposal.id
    band_id = proposal.band_id
    subtype = proposal.execution_subtype or "UNKNOWN"
    submitted = proposal.effects

    effects = parse_effects(submitted)
    if effects is None:
        error = "Invalid effects structure"
        await repo.append_execution_log(
            proposal_id=proposal_id,
            band_id=band_id,
            execution_subtype=subtype,
            effects_submitted=submitted,
            effects_executed=[],
            status="FAILED",
            error_message=error,
            executed_by_id=executed_by_id,
        )
        await repo.update_proposal(proposal, execution_error=error)
        logger.error("effects_structure_invalid proposal=%s", proposal_id)
        return EffectsExecutionResult(success=False, error=error)

    context = EffectContext(
        band_id=band_id,
        repo=repo,
        proposal_id=proposal_id,
        executed_by_id=executed_by_id,
    )
    result = await execute_effects(registry, repo, effects, context)

    await repo.append_execution_log(
        proposal_id=proposal_id,
        band_id=band_id,
        execution_subtype=subtype,
        effects_submitted=submitted,
        effects_executed=[e.to_stored() for e in result.effects_executed],
        status="SUCCESS" if result.success else "FAILED",
        error_message=result.error,
        executed_by_id=executed_by_id,
    )
    if result.success:
        await repo.update_proposal(
            proposal, effects_executed_at=datetime.now(UTC), execution_error=None
        )
    else:
        await repo.update_proposal(proposal, execution_error=result.error)
    return result
