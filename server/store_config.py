import os
from typing import Literal, Mapping, Optional

from pydantic import BaseModel, Field

from relationship_store import RelationshipSetStore, get_relationship_store

# Environment variable -> config field
ENV_VARS = {
    "RELATIONSHIP_STORE_TYPE": "store_type",
    "RELATIONSHIP_STORE_MONGO_URI": "mongo_uri",
    "RELATIONSHIP_STORE_DATABASE": "database_name",
    "RELATIONSHIP_STORE_COLLECTION": "collection_name",
    "RELATIONSHIP_STORE_REDIS_HOST": "redis_host",
    "RELATIONSHIP_STORE_REDIS_PORT": "redis_port",
    "RELATIONSHIP_STORE_REDIS_DB": "redis_db",
    "RELATIONSHIP_STORE_KEY_PREFIX": "key_prefix",
    "RELATIONSHIP_STORE_MAX_SIZE": "default_max_size",
    "RELATIONSHIP_STORE_CONSISTENT_READS": "consistent_reads",
}


class RelationshipStoreConfig(BaseModel):
    store_type: Literal["memory", "mongo", "redis"] = "memory"
    mongo_uri: str = "mongodb://localhost:27017/"
    database_name: str = "social_lib"
    collection_name: str = "relationships"
    redis_host: str = "localhost"
    redis_port: int = Field(default=6379, ge=1, le=65535)
    redis_db: int = Field(default=0, ge=0)
    key_prefix: str = "relationships:"
    # Applied to every add that does not pass its own max_size.
    default_max_size: Optional[int] = Field(default=None, ge=1)
    consistent_reads: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelationshipStoreConfig":
        environ = os.environ if environ is None else environ
        values = {}
        for var, name in ENV_VARS.items():
            raw = environ.get(var)
            if raw is not None and raw != "":
                values[name] = raw
        return cls(**values)


def build_store(config: Optional[RelationshipStoreConfig] = None) -> RelationshipSetStore:
    config = config or RelationshipStoreConfig.from_env()
    common = {
        "default_max_size": config.default_max_size,
        "consistent_reads": config.consistent_reads,
    }
    if config.store_type == "mongo":
        return get_relationship_store(
            "mongo",
            mongo_uri=config.mongo_uri,
            database_name=config.database_name,
            collection_name=config.collection_name,
            **common
        )
    if config.store_type == "redis":
        return get_relationship_store(
            "redis",
            host=config.redis_host,
            port=config.redis_port,
            db=config.redis_db,
            key_prefix=config.key_prefix,
            **common
        )
    return get_relationship_store("memory", **common)
