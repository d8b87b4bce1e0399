from functools import lru_cache

from config import (
    CSD_DIR, ENV, FINKOK_PASSWORD, FINKOK_RESELLER_PASSWORD, FINKOK_RESELLER_USER, FINKOK_USER, PAC_PROVIDER,
    PAC_TIMEOUT, STORAGE_FILE,
)
from cfdi.credentials import DirectoryCredentialsProvider
from cfdi.orchestrator import CfdiLifecycle
from cfdi.pac.dummy import DummyPacClient
from cfdi.pac.finkok import FinkokPacClient, FinkokRegistrationClient
from cfdi.storage import JsonFileStorage


def build_pac(provider: str, credentials=None, environment: str = ENV):
    if provider == "dummy":
        return DummyPacClient()
    if provider == "finkok":
        return FinkokPacClient(FINKOK_USER, FINKOK_PASSWORD, environment, PAC_TIMEOUT,
                               credentials_provider=credentials)
    raise ValueError(f"Unknown PAC provider: {provider}")


def build_lifecycle(storage_file: str = STORAGE_FILE, environment: str = ENV,
                    provider: str = PAC_PROVIDER) -> CfdiLifecycle:
    # CSD folder and PAC endpoint always follow the same environment
    credentials = DirectoryCredentialsProvider(CSD_DIR)
    return CfdiLifecycle(
        storage=JsonFileStorage(storage_file),
        credentials=credentials,
        pac=build_pac(provider, credentials, environment),
        environment=environment,
    )


@lru_cache(maxsize=1)
def get_lifecycle() -> CfdiLifecycle:
    return build_lifecycle()


def get_credentials_provider() -> DirectoryCredentialsProvider:
    return DirectoryCredentialsProvider(CSD_DIR)


def get_registration_client(environment: str = ENV) -> FinkokRegistrationClient:
    return FinkokRegistrationClient(FINKOK_RESELLER_USER, FINKOK_RESELLER_PASSWORD, environment, PAC_TIMEOUT)
