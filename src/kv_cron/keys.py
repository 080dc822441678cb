from typing import Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

KvKey = Tuple[str, ...]

DEFAULT_KEY_PREFIX: KvKey = ("kv_cron",)


class KeySpace(BaseModel):
    """
    Maps a key prefix to the keys kv_cron writes. Different prefixes never overlap.
    """
    model_config = ConfigDict(frozen=True)

    prefix: KvKey = Field(DEFAULT_KEY_PREFIX, description="Prefix shared by every key of this namespace")

    @field_validator("prefix", mode="before")
    def check_prefix(cls, v: Sequence[str]) -> KvKey:
        if isinstance(v, str):
            return (v,)
        return tuple(v)

    def job_key(self, nonce: str) -> KvKey:
        return (*self.prefix, "jobs", nonce)

    @property
    def enqueued_count_key(self) -> KvKey:
        return (*self.prefix, "enqueued_count")

    @property
    def processed_count_key(self) -> KvKey:
        return (*self.prefix, "processed_count")
