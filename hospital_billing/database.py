from functools import lru_cache

import certifi
from pymongo import MongoClient

from hospital_billing.config import DATABASE_NAME, MONGO_URI
from hospital_billing.store import MongoStore


@lru_cache(maxsize=1)
def get_client() -> MongoClient:
    if not MONGO_URI or not DATABASE_NAME:
        raise ValueError("MONGO_URI and DATABASE_NAME environment variables must be set.")

    # Use certifi for SSL certificates only for Atlas connections to avoid handshake errors on Windows
    # Local MongoDB usually doesn't use SSL by default
    client_kwargs = {}
    if "mongodb.net" in MONGO_URI or "mongodb+srv://" in MONGO_URI:
        client_kwargs["tlsCAFile"] = certifi.where()

    return MongoClient(MONGO_URI, **client_kwargs)


@lru_cache(maxsize=1)
def get_store() -> MongoStore:
    """Store handle for the configured database. Multi-document transactions need a replica set (Atlas is one)."""
    client = get_client()
    return MongoStore(client[DATABASE_NAME], client)
