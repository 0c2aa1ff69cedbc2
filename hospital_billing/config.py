import os

from dotenv import load_dotenv

load_dotenv()

MONGO_URI = os.getenv("MONGO_URI")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# Daily bed charge used when the receptionist does not pick a rate
DEFAULT_BED_RATE_PER_DAY = float(os.getenv("DEFAULT_BED_RATE_PER_DAY", "200"))

# Medical services are untaxed; kept configurable for non-medical sales
TAX_RATE = float(os.getenv("TAX_RATE", "0"))

TRANSACTION_MAX_ATTEMPTS = int(os.getenv("TRANSACTION_MAX_ATTEMPTS", "5"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
