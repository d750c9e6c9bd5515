from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Depends, Path, Response
import uvicorn
from sqlalchemy.orm import Session
from starlette import status

from extrand.core.db import get_db, init_db
from extrand.core.logging_config import configure_logging
from extrand.models.schemas.allocation import (
    BatchRandomiseRequestModel,
    BatchRandomiseResponseModel,
    FailureKind,
    RandomisationResultModel,
    RandomiseRequestModel,
)
from extrand.models.schemas.config import RandomiserConfigModel
from extrand.models.schemas.randomization import (
    RandomizationCreateModel,
    RandomizationResponseModel,
)
from extrand.models.schemas.stratum import StratumModel
from extrand.services.randomisation_service import RandomisationService

FAILURE_STATUS_CODES = {
    FailureKind.EXHAUSTED: status.HTTP_409_CONFLICT,
    FailureKind.CLAIM_RACE_LOST: status.HTTP_409_CONFLICT,
    FailureKind.ALREADY_RANDOMISED: status.HTTP_409_CONFLICT,
    FailureKind.STRATIFICATION_MISMATCH: status.HTTP_422_UNPROCESSABLE_ENTITY,
    FailureKind.CONFIG_INVALID: status.HTTP_500_INTERNAL_SERVER_ERROR,
    FailureKind.PERSISTENCE_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    FailureKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    yield


app = FastAPI(
    title="Extended randomisation",
    description="Stratified allocation-table randomisation with biased coin minimisation",
    version="0.1.0",
    lifespan=lifespan,
)


@app.post(
    "/randomizations",
    response_model=RandomizationResponseModel,
    status_code=status.HTTP_201_CREATED,
)
def post_randomizations(
    randomization_data: RandomizationCreateModel,
    db: Session = Depends(get_db),
):
    return RandomisationService(db).create_randomization(randomization_data)


@app.get(
    "/randomizations/{randomization_id}",
    response_model=RandomizationResponseModel,
    status_code=status.HTTP_200_OK,
)
def get_randomization(
    randomization_id: str = Path(..., description="The ID of the randomization."),
    db: Session = Depends(get_db),
):
    return RandomisationService(db).get_randomization(randomization_id)


@app.put(
    "/randomizations/{randomization_id}/config",
    response_model=RandomizationResponseModel,
    status_code=status.HTTP_200_OK,
    summary="Validate and save the randomiser configuration",
)
def put_randomiser_config(
    config: RandomiserConfigModel,
    randomization_id: str = Path(..., description="The ID of the randomization."),
    db: Session = Depends(get_db),
):
    return RandomisationService(db).save_config(randomization_id, config)


@app.delete(
    "/randomizations/{randomization_id}/config",
    response_model=RandomizationResponseModel,
    status_code=status.HTTP_200_OK,
    summary="Revert to the default randomiser",
)
def delete_randomiser_config(
    randomization_id: str = Path(..., description="The ID of the randomization."),
    db: Session = Depends(get_db),
):
    return RandomisationService(db).reset_config(randomization_id)


@app.get(
    "/randomizations/{randomization_id}/strata",
    response_model=List[StratumModel],
    status_code=status.HTTP_200_OK,
    summary="List strata with their stable indices",
)
def get_strata(
    randomization_id: str = Path(..., description="The ID of the randomization."),
    db: Session = Depends(get_db),
):
    return RandomisationService(db).list_strata(randomization_id)


@app.post(
    "/randomizations/{randomization_id}/records/{record_id}/randomise",
    response_model=RandomisationResultModel,
    status_code=status.HTTP_200_OK,
    summary="Randomise a record",
)
def post_randomise_record(
    request: RandomiseRequestModel,
    response: Response,
    randomization_id: str = Path(..., description="The ID of the randomization."),
    record_id: str = Path(..., description="The ID of the record."),
    db: Session = Depends(get_db),
):
    """
    Allocates the record to the next entry of the allocation table for its
    stratum, as directed by the configured randomiser.
    """
    result = RandomisationService(db).randomise_record(randomization_id, record_id, request)
    if not result.result:
        response.status_code = FAILURE_STATUS_CODES[result.failure]
    return result


@app.post(
    "/randomizations/{randomization_id}/batch",
    response_model=BatchRandomiseResponseModel,
    status_code=status.HTTP_200_OK,
    summary="Randomise several records",
)
def post_batch_randomise(
    batch: BatchRandomiseRequestModel,
    randomization_id: str = Path(..., description="The ID of the randomization."),
    db: Session = Depends(get_db),
):
    return RandomisationService(db).batch_randomise(randomization_id, batch)


# Entry point for running the application directly (useful for local development)
if __name__ == "__main__":
    uvicorn.run("extrand.main:app", host="0.0.0.0", port=8000, reload=True)
