from functools import lru_cache
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from ..core.auth import SessionStore, TelegramIdentityVerifier
from ..core.database import Database
from ..core.gcs import GcsBlobStager
from ..services.catalog import ModelCatalog, get_catalog
from ..services.executor import GenerationExecutor
from ..services.jobs import JobStore
from ..services.ledger import Account, LedgerStore
from ..services.saga import BlobStager, Executor, GenerationSaga

# Bearer scheme so Swagger UI can send the session token
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/telegram")


@lru_cache(maxsize=1)
def _shared_database() -> Database:
    return Database()


def get_db() -> Database:
    """One engine per process; sessions are opened per operation by the stores."""
    return _shared_database()


def get_ledger_store(db: Database = Depends(get_db)) -> LedgerStore:
    return LedgerStore(db=db)


def get_job_store(db: Database = Depends(get_db)) -> JobStore:
    return JobStore(db=db)


def get_session_store(db: Database = Depends(get_db)) -> SessionStore:
    return SessionStore(db=db)


def get_model_catalog() -> ModelCatalog:
    return get_catalog()


def get_identity_verifier() -> TelegramIdentityVerifier:
    return TelegramIdentityVerifier()


def get_blob_stager() -> GcsBlobStager:
    return GcsBlobStager()


def get_executor() -> GenerationExecutor:
    return GenerationExecutor()


def get_saga(
    catalog: ModelCatalog = Depends(get_model_catalog),
    ledger: LedgerStore = Depends(get_ledger_store),
    jobs: JobStore = Depends(get_job_store),
    stager: BlobStager = Depends(get_blob_stager),
    executor: Executor = Depends(get_executor),
) -> GenerationSaga:
    return GenerationSaga(catalog=catalog, ledger=ledger, jobs=jobs, stager=stager, executor=executor)


def get_current_account(
    token: Annotated[str, Depends(oauth2_scheme)],
    session_store: SessionStore = Depends(get_session_store),
) -> Account:
    """Validate the bearer session token and return its account."""
    account = session_store.authenticate(token)
    if not account:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return account
