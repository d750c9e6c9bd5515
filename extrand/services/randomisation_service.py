# services/randomisation_service.py
import logging
from typing import List

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from extrand.core.errors import (
    ConfigInvalidError,
    PersistenceFailureError,
    StratificationMismatchError,
    UnknownRandomiserError,
)
from extrand.core.rng import SeededRng
from extrand.models.orm.allocation import AllocationORM
from extrand.models.orm.randomization import RandomizationORM
from extrand.models.schemas.allocation import (
    AllocationOutcome,
    AllocationSummary,
    BatchRandomiseRequestModel,
    BatchRandomiseResponseModel,
    FailureKind,
    OutcomeStatus,
    RandomisationResultModel,
    RandomiseRequestModel,
    RecordContext,
)
from extrand.models.schemas.config import RandomiserConfigModel
from extrand.models.schemas.randomization import (
    BLINDED_GROUP,
    RandomizationCreateModel,
    RandomizationResponseModel,
    RandomizationSpec,
    StratificationFactorConfig,
    TreatmentGroupConfig,
)
from extrand.models.schemas.stratum import StratumModel
from extrand.repositories.allocation_repo import AllocationRepository
from extrand.repositories.randomization_repo import RandomizationRepository
from extrand.repositories.record_repo import RecordRepository
from extrand.services.config_validator import check_production_edit, validate_config
from extrand.services.randomisers.base import RandomiserStrategy
from extrand.services.randomisers.registry import get_randomiser_class, make_randomiser
from extrand.services.strata import StratumCatalog

logger = logging.getLogger(__name__)

# Redraws allowed when a concurrent request moves a seeded cursor mid-call
SEED_CURSOR_ATTEMPTS = 3

OUTCOME_FAILURES = {
    OutcomeStatus.EXHAUSTED: FailureKind.EXHAUSTED,
    OutcomeStatus.CLAIM_RACE_LOST: FailureKind.CLAIM_RACE_LOST,
    OutcomeStatus.ALREADY_RANDOMISED: FailureKind.ALREADY_RANDOMISED,
}


class RandomisationService:
    def __init__(self, db: Session):
        self.randomization_repo = RandomizationRepository(db)
        self.allocation_repo = AllocationRepository(db)
        self.record_repo = RecordRepository(db)
        self.db = db

    # --- Randomization specs and configuration ---

    def create_randomization(
        self, randomization_data: RandomizationCreateModel
    ) -> RandomizationResponseModel:
        try:
            randomization = self.randomization_repo.create_randomization(randomization_data)
        except ValueError as e:
            logger.warning("Randomization rejected: %s", e)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except RuntimeError:
            logger.exception("Failed to create randomization")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to create randomization.",
            )

        logger.info("Created randomization %s", randomization.randomization_id)
        return self._to_response(randomization)

    def get_randomization(self, randomization_id: str) -> RandomizationResponseModel:
        return self._to_response(self._get_or_404(randomization_id))

    def save_config(
        self, randomization_id: str, config: RandomiserConfigModel
    ) -> RandomizationResponseModel:
        """
        Validate and store a strategy configuration. Invalid settings are
        rejected wholesale and the previous configuration stays in effect.
        """
        randomization = self._get_or_404(randomization_id)
        spec = RandomizationSpec.model_validate(randomization)
        try:
            randomiser_cls = get_randomiser_class(config.randomiser_type)
            validated = validate_config(spec, config, randomiser_cls)

            if self.allocation_repo.has_production_claims(randomization_id):
                current = self.randomization_repo.get_config(randomization)
                check_production_edit(current, validated, randomiser_cls.PROD_EDITABLE_SETTINGS)

            self.randomization_repo.save_config(randomization_id, validated)
            self.db.commit()

        except ConfigInvalidError as e:
            self.db.rollback()
            logger.info("Rejected config for randomization %s: %s", randomization_id, e)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"message": "Invalid randomiser configuration", "errors": e.errors},
            )

        logger.info(
            "Saved %s config for randomization %s", validated.randomiser_type.value, randomization_id
        )
        return self.get_randomization(randomization_id)

    def reset_config(self, randomization_id: str) -> RandomizationResponseModel:
        """Return a randomization to table-order allocation."""
        return self.save_config(randomization_id, RandomiserConfigModel())

    def list_strata(self, randomization_id: str) -> List[StratumModel]:
        randomization = self._get_or_404(randomization_id)
        spec = RandomizationSpec.model_validate(randomization)
        catalog = StratumCatalog(spec)
        claimed = self.allocation_repo.count_claimed_by_stratum(randomization_id, spec.status)

        strata = []
        for index, key in enumerate(catalog.combinations()):
            strata.append(
                StratumModel(
                    index=index,
                    key=key.serialize(),
                    levels=key.as_dict(),
                    group_level=key.group_level,
                    allocated=claimed.get(key.serialize(), 0),
                )
            )
        return strata

    # --- Randomising records ---

    def randomise_record(
        self, randomization_id: str, record_id: str, request: RandomiseRequestModel
    ) -> RandomisationResultModel:
        """
        Randomise one record. Failures are reported in the result rather than
        raised; unexpected errors are logged in full and reported generically.
        """
        randomization = self._get_or_404(randomization_id)
        context = RecordContext(
            record_id=record_id, fields=request.fields, group_level=request.group_level
        )
        try:
            return self._randomise(randomization, context)

        except StratificationMismatchError as e:
            self.db.rollback()
            logger.info("Record %s of randomization %s: %s", record_id, randomization_id, e)
            return self._failure(record_id, FailureKind.STRATIFICATION_MISMATCH, str(e))

        except (ConfigInvalidError, UnknownRandomiserError) as e:
            self.db.rollback()
            logger.error(
                "Randomization %s has an unusable randomiser config: %s", randomization_id, e
            )
            return self._failure(
                record_id, FailureKind.CONFIG_INVALID, f"Error in randomiser config: {e}"
            )

        except PersistenceFailureError as e:
            return self._failure(record_id, FailureKind.PERSISTENCE_FAILURE, str(e))

        except Exception:
            self.db.rollback()
            logger.exception(
                "Randomisation failed: randomization_id=%s record_id=%s",
                randomization_id,
                record_id,
            )
            return self._failure(
                record_id,
                FailureKind.INTERNAL,
                f"An error occurred in randomization id {randomization_id}",
            )

    def batch_randomise(
        self, randomization_id: str, batch: BatchRandomiseRequestModel
    ) -> BatchRandomiseResponseModel:
        """Randomise several records one after another; each succeeds or fails alone."""
        results = [
            self.randomise_record(randomization_id, item.record_id, item)
            for item in batch.records
        ]
        randomised = sum(1 for r in results if r.result)
        logger.info(
            "Batch randomisation of %s: %s randomised, %s failed",
            randomization_id,
            randomised,
            len(results) - randomised,
        )
        return BatchRandomiseResponseModel(
            randomization_id=randomization_id,
            randomised=randomised,
            failed=len(results) - randomised,
            results=results,
        )

    def _randomise(
        self, randomization: RandomizationORM, context: RecordContext
    ) -> RandomisationResultModel:
        randomization_id = randomization.randomization_id
        spec = RandomizationSpec.model_validate(randomization)

        if self.allocation_repo.get_allocation_for_record(randomization_id, context.record_id):
            return self._failure(
                context.record_id,
                FailureKind.ALREADY_RANDOMISED,
                f"Record {context.record_id} has already been randomized.",
            )

        catalog = StratumCatalog(spec)
        stratum_key = catalog.make_key(context.fields, context.group_level)

        config = self.randomization_repo.get_config(randomization)
        validated = validate_config(spec, config, get_randomiser_class(config.randomiser_type))

        for attempt in range(1, SEED_CURSOR_ATTEMPTS + 1):
            rng = self._reserve_rng(randomization)
            randomiser = make_randomiser(spec, validated, self.allocation_repo, rng)
            outcome = randomiser.allocate(context, stratum_key)

            if not outcome.allocated:
                self.db.rollback()
                # Draws made by a failed call are spent; the cursor never moves back
                self._advance_seed_sequence(randomization_id, rng)
                self.db.commit()
                return self._failure(
                    context.record_id,
                    OUTCOME_FAILURES[outcome.status],
                    outcome.message,
                    retry=outcome.retry,
                )

            if self._advance_seed_sequence(randomization_id, rng):
                break

            # Another request drew from the same cursor: drop this allocation and redraw
            self.db.rollback()
            logger.warning(
                "Seed cursor of randomization %s moved while randomising record %s "
                "(attempt %s); redrawing",
                randomization_id,
                context.record_id,
                attempt,
            )
        else:
            return self._failure(
                context.record_id,
                FailureKind.CLAIM_RACE_LOST,
                "Concurrent randomizations kept moving the seed cursor; please retry.",
                retry=True,
            )

        self.db.commit()

        allocation = self._record_allocation(spec, randomiser, context, outcome)

        return RandomisationResultModel(
            record_id=context.record_id,
            result=True,
            message=self._allocation_message(spec, allocation),
            allocation=self._summarise(spec, catalog, stratum_key, allocation),
        )

    def _record_allocation(
        self,
        spec: RandomizationSpec,
        randomiser: RandomiserStrategy,
        context: RecordContext,
        outcome: AllocationOutcome,
    ) -> AllocationORM:
        """
        Write the allocated value to the record. If reading the claimed row
        or writing the record fails the claim is released so the table and
        the record stay consistent.
        """
        allocation_id = outcome.allocation_id
        try:
            allocation = self.allocation_repo.get_allocation(allocation_id)
            self.record_repo.save_value(
                spec.randomization_id, context.record_id, spec.target_field, allocation.target_value
            )
        except Exception as e:
            logger.exception(
                "Failed to write allocation %s to record %s of randomization %s: rolling back claim",
                allocation_id,
                context.record_id,
                spec.randomization_id,
            )
            self.db.rollback()
            self.allocation_repo.unclaim_allocation(spec.randomization_id, allocation_id)
            self.db.commit()
            raise PersistenceFailureError(
                "Failed to record allocation result to record", allocation_id
            ) from e

        logging_field = getattr(randomiser, "logging_field", "")
        if logging_field and outcome.trace:
            try:
                self.record_repo.save_value(
                    spec.randomization_id,
                    context.record_id,
                    logging_field,
                    "\n".join(outcome.trace),
                )
            except Exception:
                # The allocation stands; only the audit copy in the record is missing
                logger.exception(
                    "Failed to write minimization log to field %s of record %s",
                    logging_field,
                    context.record_id,
                )
        return allocation

    def _reserve_rng(self, randomization: RandomizationORM) -> SeededRng:
        """Generator starting at the stored cursor, read fresh under a row lock."""
        if randomization.seed is None:
            return SeededRng()
        cursor = self.randomization_repo.get_seed_sequence_for_update(
            randomization.randomization_id
        )
        return SeededRng(randomization.seed, cursor)

    def _advance_seed_sequence(self, randomization_id: str, rng: SeededRng) -> bool:
        """Persist the cursor; False if another request moved it since it was read."""
        if not rng.is_seeded or rng.cursor == rng.start_cursor:
            return True
        return self.randomization_repo.advance_seed_sequence(
            randomization_id, rng.start_cursor, rng.cursor
        )

    # --- Helpers ---

    def _get_or_404(self, randomization_id: str) -> RandomizationORM:
        randomization = self.randomization_repo.get_randomization(randomization_id)
        if not randomization:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Randomization {randomization_id} not found.",
            )
        return randomization

    def _failure(
        self, record_id: str, kind: FailureKind, message: str, retry: bool = False
    ) -> RandomisationResultModel:
        return RandomisationResultModel(
            record_id=record_id, result=False, message=message, failure=kind, retry=retry
        )

    def _allocation_message(self, spec: RandomizationSpec, allocation: AllocationORM) -> str:
        if spec.is_blinded:
            return f"{allocation.target_value}"
        label = spec.reporting_groups.get(allocation.target_value, allocation.target_value)
        message = f"{label} ({allocation.target_value})"
        if allocation.target_alt_value:
            message += f" {allocation.target_alt_value}"
        return message

    def _summarise(self, spec, catalog, stratum_key, allocation) -> AllocationSummary:
        group = BLINDED_GROUP[0] if spec.is_blinded else allocation.target_value
        groups = list(spec.reporting_groups)
        return AllocationSummary(
            allocation_id=allocation.allocation_id,
            target_value=allocation.target_value,
            target_alt_value=allocation.target_alt_value,
            group=group,
            group_index=groups.index(group) if group in groups else None,
            stratum_index=catalog.index_of(stratum_key),
        )

    def _to_response(self, randomization: RandomizationORM) -> RandomizationResponseModel:
        return RandomizationResponseModel(
            randomization_id=randomization.randomization_id,
            target_field=randomization.target_field,
            is_blinded=randomization.is_blinded,
            factors=[StratificationFactorConfig.model_validate(f) for f in randomization.factors],
            group_levels=randomization.group_levels,
            groups=[TreatmentGroupConfig.model_validate(g) for g in randomization.groups],
            status=randomization.status,
            seed=randomization.seed,
            seed_sequence=randomization.seed_sequence,
            config=self.randomization_repo.get_config(randomization),
            config_editable=not self.allocation_repo.has_production_claims(
                randomization.randomization_id
            ),
            created_at=randomization.created_at,
        )
