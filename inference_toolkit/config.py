"""Centralised settings for the inference toolkit (Pydantic v2).

Single source of truth for runner and classifier configuration.
Loads from .env, TOOLKIT_* environment variables, or defaults.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from inference_toolkit.types import (
    DEFAULT_SOFTMAX_LAYER,
    BackendSelection,
    BackendType,
    ChannelOrder,
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TOOLKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    # ── Logging ──────────────────────────────────────────────
    debug: bool = False
    log_level: str = "INFO"
    log_file: str | None = None

    # ── Assets ───────────────────────────────────────────────
    model_path: str | None = None
    labels_path: str | None = None

    # ── Backend ──────────────────────────────────────────────
    backend: BackendType = BackendType.AUTO
    use_nchw: bool = True
    strict_backend: bool = False
    intra_op_num_threads: int = 0

    # ── Output processing ────────────────────────────────────
    output_layer_index: int = 0
    softmax_layer: str = DEFAULT_SOFTMAX_LAYER
    transpose_layer: str | None = None
    async_readback_enabled: bool = True
    # None = detect from the available execution providers
    async_readback_supported: bool | None = None

    @field_validator("backend", mode="before")
    @classmethod
    def _parse_backend(cls, v: str | BackendType) -> BackendType:
        return BackendType.parse(v)

    @field_validator("output_layer_index")
    @classmethod
    def _check_output_index(cls, v: int) -> int:
        if v < 0:
            raise ValueError("output_layer_index must be >= 0")
        return v

    @property
    def channel_order(self) -> ChannelOrder:
        return ChannelOrder.from_flag(self.use_nchw)

    @property
    def backend_selection(self) -> BackendSelection:
        return BackendSelection(backend=self.backend, channel_order=self.channel_order)


settings = Settings()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the singleton Settings instance."""
    return settings
