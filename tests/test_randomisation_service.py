import logging
from unittest import mock

import pytest
from fastapi import HTTPException
from sqlalchemy.exc import OperationalError

from extrand.core.rng import SeededRng
from extrand.models.orm.randomization import RandomizationStatus
from extrand.models.schemas.allocation import (
    BatchRandomiseRequestModel,
    FailureKind,
    RandomiseRequestModel,
)
from extrand.models.schemas.config import RandomiserConfigModel, RandomiserType
from extrand.repositories.allocation_repo import AllocationRepository, ClaimResult
from extrand.repositories.randomization_repo import RandomizationRepository
from extrand.repositories.record_repo import RecordRepository
from extrand.services.randomisation_service import RandomisationService

from conftest import minimization_config

SEX = [{"field_name": "sex", "levels": ["1", "2"]}]


def male(**kwargs) -> RandomiseRequestModel:
    return RandomiseRequestModel(fields={"sex": "1"}, **kwargs)


@pytest.fixture
def service(db):
    return RandomisationService(db)


@pytest.fixture
def stratified(make_randomization, add_allocations):
    randomization = make_randomization(factors=SEX)
    ids = add_allocations(
        randomization,
        [
            ({"sex": "1"}, None, "1", "R1-1"),
            ({"sex": "2"}, None, "2", "R2-1"),
            ({"sex": "1"}, None, "2", "R1-2"),
        ],
    )
    return randomization.randomization_id, ids


# =============================================================================
# RANDOMISING RECORDS
# =============================================================================


def test_randomise_writes_group_to_record(service, db, stratified):
    rid, ids = stratified

    result = service.randomise_record(rid, "101", male())

    assert result.result is True
    assert result.message == "Treatment (1) R1-1"
    assert result.allocation.allocation_id == ids[0]
    assert result.allocation.group_index == 0
    assert result.allocation.stratum_index == 0
    assert RecordRepository(db).get_value(rid, "101", "rand_group") == "1"
    assert AllocationRepository(db).get_allocation(ids[0]).is_used_by == "101"


def test_exhausted_stratum_is_reported_not_raised(service, db, stratified):
    rid, _ = stratified
    service.randomise_record(rid, "101", male())
    service.randomise_record(rid, "102", male())

    result = service.randomise_record(rid, "103", male())

    assert result.result is False
    assert result.failure == FailureKind.EXHAUSTED
    assert RecordRepository(db).get_value(rid, "103", "rand_group") is None


def test_exhausted_stratum_is_extended_once(service, db, make_randomization, add_allocations):
    randomization = make_randomization(
        factors=SEX, config=RandomiserConfigModel(extend_table=True)
    )
    rid = randomization.randomization_id
    add_allocations(randomization, [({"sex": "1"}, None, "2", "R1-1")])
    service.randomise_record(rid, "101", male())

    with mock.patch.object(
        service.allocation_repo,
        "insert_allocation_row",
        wraps=service.allocation_repo.insert_allocation_row,
    ) as insert:
        result = service.randomise_record(rid, "102", male())

    insert.assert_called_once()
    assert result.result is True
    assert result.allocation.target_alt_value == "R1-2"
    assert RecordRepository(db).get_value(rid, "102", "rand_group") == "2"


def test_failed_record_write_releases_the_claim(service, db, stratified):
    rid, ids = stratified

    with mock.patch.object(
        service.record_repo, "save_value", side_effect=OperationalError("UPDATE", {}, None)
    ), mock.patch.object(
        service.allocation_repo,
        "unclaim_allocation",
        wraps=service.allocation_repo.unclaim_allocation,
    ) as unclaim:
        result = service.randomise_record(rid, "101", male())

    unclaim.assert_called_once_with(rid, ids[0])
    assert result.failure == FailureKind.PERSISTENCE_FAILURE
    assert AllocationRepository(db).get_allocation(ids[0]).is_used_by is None

    retried = service.randomise_record(rid, "101", male())
    assert retried.allocation.allocation_id == ids[0]


def test_record_cannot_be_randomised_twice(service, stratified):
    rid, _ = stratified
    service.randomise_record(rid, "101", male())

    result = service.randomise_record(rid, "101", male())

    assert result.failure == FailureKind.ALREADY_RANDOMISED
    assert "already been randomized" in result.message


def test_stratification_mismatch(service, db, stratified):
    rid, ids = stratified

    result = service.randomise_record(rid, "101", RandomiseRequestModel(fields={"sex": "9"}))

    assert result.failure == FailureKind.STRATIFICATION_MISMATCH
    assert "'9' is not a level of 'sex'" in result.message
    assert AllocationRepository(db).get_allocation(ids[0]).is_used_by is None


def test_unexpected_error_is_logged_and_reported_generically(service, stratified, caplog):
    rid, _ = stratified

    with mock.patch.object(
        service.allocation_repo,
        "get_next_free_allocation",
        side_effect=RuntimeError("connection string with password"),
    ), caplog.at_level(logging.ERROR):
        result = service.randomise_record(rid, "101", male())

    assert result.failure == FailureKind.INTERNAL
    assert result.message == f"An error occurred in randomization id {rid}"
    assert "password" not in result.message
    assert "record_id=101" in caplog.text


def test_stored_config_that_no_longer_validates(service, db, make_randomization, add_allocations):
    randomization = make_randomization(
        config=RandomiserConfigModel(
            randomiser_type=RandomiserType.RANDOM_INTEGER, settings={"min": 5, "max": 1}
        )
    )
    add_allocations(randomization, [({}, None, "1", "001")])

    result = service.randomise_record(randomization.randomization_id, "101", RandomiseRequestModel())

    assert result.failure == FailureKind.CONFIG_INVALID
    assert "Invalid range" in result.message


def test_seed_cursor_is_kept_after_a_lost_claim(service, db, make_randomization, add_allocations):
    randomization = make_randomization(
        seed=42, config=RandomiserConfigModel(randomiser_type=RandomiserType.RANDOM_NUMBER)
    )
    rid = randomization.randomization_id
    add_allocations(randomization, [({}, None, "1", None), ({}, None, "2", None)])

    with mock.patch.object(
        service.allocation_repo, "claim_allocation", return_value=ClaimResult.ROW_TAKEN
    ):
        lost = service.randomise_record(rid, "101", RandomiseRequestModel())
    assert lost.failure == FailureKind.CLAIM_RACE_LOST
    assert lost.retry is True
    assert RandomizationRepository(db).get_randomization(rid).seed_sequence == 1

    service.randomise_record(rid, "101", RandomiseRequestModel())
    assert RandomizationRepository(db).get_randomization(rid).seed_sequence == 2


@pytest.fixture
def seeded_random_number(make_randomization, add_allocations):
    randomization = make_randomization(
        seed=42, config=RandomiserConfigModel(randomiser_type=RandomiserType.RANDOM_NUMBER)
    )
    add_allocations(randomization, [({}, None, "1", None), ({}, None, "2", None)])
    return randomization.randomization_id


def test_overlapping_seeded_requests_never_share_a_draw(db, session_factory, seeded_random_number):
    rid = seeded_random_number
    other_db = session_factory()
    try:
        other = RandomisationService(other_db)
        # The second request has the randomization loaded before the first commits
        assert other.randomization_repo.get_randomization(rid).seed_sequence == 0

        first = RandomisationService(db).randomise_record(rid, "101", RandomiseRequestModel())
        second = other.randomise_record(rid, "102", RandomiseRequestModel())
    finally:
        other_db.close()

    assert first.allocation.target_alt_value == repr(SeededRng.draw_at(42, 1))
    assert second.allocation.target_alt_value == repr(SeededRng.draw_at(42, 2))
    assert RandomizationRepository(db).get_randomization(rid).seed_sequence == 2


def test_cursor_moved_during_call_redraws(service, db, seeded_random_number):
    rid = seeded_random_number
    repo = service.randomization_repo
    # First read sees a cursor another request has already advanced past
    with mock.patch.object(
        repo, "get_seed_sequence_for_update", side_effect=[0, 1]
    ), mock.patch.object(
        repo, "advance_seed_sequence", wraps=repo.advance_seed_sequence
    ) as advance:
        RandomizationRepository(db).advance_seed_sequence(rid, 0, 1)
        db.commit()
        result = service.randomise_record(rid, "101", RandomiseRequestModel())

    assert [c.args for c in advance.call_args_list] == [(rid, 0, 1), (rid, 1, 2)]
    assert result.result is True
    assert result.allocation.target_alt_value == repr(SeededRng.draw_at(42, 2))
    assert RandomizationRepository(db).get_randomization(rid).seed_sequence == 2
    assert AllocationRepository(db).count_claimed_allocations(rid, RandomizationStatus.DEVELOPMENT) == 1


def test_cursor_that_keeps_moving_asks_for_retry(service, db, seeded_random_number):
    rid = seeded_random_number
    with mock.patch.object(
        service.randomization_repo, "advance_seed_sequence", return_value=False
    ) as advance:
        result = service.randomise_record(rid, "101", RandomiseRequestModel())

    assert advance.call_count == 3
    assert result.failure == FailureKind.CLAIM_RACE_LOST
    assert result.retry is True
    assert AllocationRepository(db).get_allocation_for_record(rid, "101") is None


def test_concurrent_duplicate_of_record_is_already_randomised(service, db, stratified):
    rid, ids = stratified
    AllocationRepository(db).claim_allocation(rid, ids[0], "101")
    db.commit()

    # The duplicate check ran before the other request for the record committed
    with mock.patch.object(service.allocation_repo, "get_allocation_for_record", return_value=None):
        result = service.randomise_record(rid, "101", male())

    assert result.failure == FailureKind.ALREADY_RANDOMISED
    assert result.retry is False
    assert AllocationRepository(db).get_allocation(ids[2]).is_used_by is None


def test_failed_read_of_claimed_row_releases_the_claim(service, db, stratified):
    rid, ids = stratified

    with mock.patch.object(
        service.allocation_repo, "get_allocation", side_effect=OperationalError("SELECT", {}, None)
    ), mock.patch.object(
        service.allocation_repo,
        "unclaim_allocation",
        wraps=service.allocation_repo.unclaim_allocation,
    ) as unclaim:
        result = service.randomise_record(rid, "101", male())

    unclaim.assert_called_once_with(rid, ids[0])
    assert result.failure == FailureKind.PERSISTENCE_FAILURE
    assert AllocationRepository(db).get_allocation(ids[0]).is_used_by is None
    assert RecordRepository(db).get_value(rid, "101", "rand_group") is None


def test_minimization_trace_written_to_logging_field(service, db, make_randomization, add_allocations):
    randomization = make_randomization(config=minimization_config(logging_field="mini_log"))
    rid = randomization.randomization_id
    add_allocations(randomization, [({}, None, "1", "001"), ({}, None, "1", "002")])

    result = service.randomise_record(rid, "101", RandomiseRequestModel())

    assert result.result is True
    trace = RecordRepository(db).get_value(rid, "101", "mini_log")
    assert trace.startswith("***** Biased coin minimization: record 101 *****")
    assert RecordRepository(db).get_value(rid, "101", "rand_group") == result.allocation.target_value


def test_batch_reports_each_record(service, stratified):
    rid, _ = stratified
    batch = BatchRandomiseRequestModel(
        records=[
            {"record_id": "101", "fields": {"sex": "1"}},
            {"record_id": "102", "fields": {}},
            {"record_id": "103", "fields": {"sex": "2"}},
        ]
    )

    response = service.batch_randomise(rid, batch)

    assert (response.randomised, response.failed) == (2, 1)
    assert [r.record_id for r in response.results] == ["101", "102", "103"]
    assert response.results[1].failure == FailureKind.STRATIFICATION_MISMATCH


def test_unknown_randomization_is_404(service):
    with pytest.raises(HTTPException) as exc:
        service.randomise_record("missing", "101", RandomiseRequestModel())
    assert exc.value.status_code == 404


# =============================================================================
# CONFIGURATION AND STRATA
# =============================================================================


def test_invalid_config_keeps_previous(service, stratified):
    rid, _ = stratified
    bad = RandomiserConfigModel(
        randomiser_type=RandomiserType.RANDOM_INTEGER, settings={"min": "a"}
    )

    with pytest.raises(HTTPException) as exc:
        service.save_config(rid, bad)

    assert exc.value.status_code == 400
    assert 'Non-integer min "a"' in exc.value.detail["errors"]
    assert service.get_randomization(rid).config.randomiser_type == RandomiserType.DEFAULT


def test_save_and_reset_config(service, stratified):
    rid, _ = stratified
    saved = service.save_config(
        rid,
        RandomiserConfigModel(randomiser_type=RandomiserType.RANDOM_INTEGER, settings={"min": "1", "max": "9"}),
    )
    assert saved.config.settings == {"min": 1, "max": 9}

    reset = service.reset_config(rid)
    assert reset.config == RandomiserConfigModel()


def test_production_claims_lock_config(service, make_randomization, add_allocations):
    randomization = make_randomization(
        status=RandomizationStatus.PRODUCTION, config=minimization_config()
    )
    rid = randomization.randomization_id
    add_allocations(randomization, [({}, None, "1", "001"), ({}, None, "1", "002")])
    assert service.get_randomization(rid).config_editable is True

    service.randomise_record(rid, "101", RandomiseRequestModel())
    assert service.get_randomization(rid).config_editable is False

    relabelled = service.save_config(rid, minimization_config(logging_field="mini_log"))
    assert relabelled.config.settings["logging_field"] == "mini_log"

    with pytest.raises(HTTPException) as exc:
        service.save_config(rid, minimization_config(base_assignment_prob=0.9))
    assert exc.value.detail["errors"] == [
        "Setting 'base_assignment_prob' is not editable once records are randomised in production"
    ]


def test_list_strata_counts_claims(service, stratified):
    rid, _ = stratified
    service.randomise_record(rid, "101", male())

    with mock.patch.object(service.allocation_repo, "get_claimed_allocations") as full_load:
        strata = service.list_strata(rid)

    full_load.assert_not_called()

    assert [(s.index, s.key, s.allocated) for s in strata] == [(0, "sex=1", 1), (1, "sex=2", 0)]
