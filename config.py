import os
from dotenv import load_dotenv

# Base ".env" first (shared values)
load_dotenv(".env")

# Specific environment: demo or production
ENV = os.getenv("CFDI_ENV", "demo").lower()

env_file_map = {
    "demo": ".env.demo",
    "production": ".env.production"
}

# The environment file overrides the base values
specific_env_file = env_file_map.get(ENV)
if specific_env_file:
    load_dotenv(specific_env_file, override=True)

# PAC
PAC_PROVIDER = os.getenv("PAC_PROVIDER", "finkok").lower()
PAC_TIMEOUT = int(os.getenv("PAC_TIMEOUT", "30"))

FINKOK_USER = os.getenv("FINKOK_USER", "")
FINKOK_PASSWORD = os.getenv("FINKOK_PASSWORD", "")
FINKOK_RESELLER_USER = os.getenv("FINKOK_RESELLER_USER", FINKOK_USER)
FINKOK_RESELLER_PASSWORD = os.getenv("FINKOK_RESELLER_PASSWORD", FINKOK_PASSWORD)

# Local collaborators
CSD_DIR = os.getenv("CSD_DIR", "csd")
STORAGE_FILE = os.getenv("CFDI_STORAGE_FILE", "cfdi_store.json")
LOG_DIR = os.getenv("LOG_DIR", "logs")
