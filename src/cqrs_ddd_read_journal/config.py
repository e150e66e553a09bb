"""Configuration models for the MongoDB connection and the read journal.

The read journal reads the collections of exactly one auto-started journal
plugin and one auto-started snapshot-store plugin, as configured for the
write path::

    ReadJournalConfig.from_mapping({
        "auto-start-journals": ["mongodb-journal"],
        "auto-start-snapshot-stores": ["mongodb-snaps"],
        "plugins": {
            "mongodb-journal": {"overrides": {"journal-collection": "things_journal"}},
            "mongodb-snaps": {"overrides": {"snaps-collection": "things_snaps"}},
        },
    })

Any ambiguity is rejected when the configuration is loaded, never mid-stream.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .exceptions import ReadJournalConfigurationError
from .priority import DEFAULT_PRIORITY_DIGITS


class MongoDbConfig(BaseModel):
    """Connection settings for the Motor client."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    uri: str = "mongodb://localhost:27017"
    database: str | None = None
    server_selection_timeout_ms: int = Field(default=5000, gt=0)
    connect_timeout_ms: int = Field(default=10000, gt=0)
    max_pool_size: int | None = Field(default=None, gt=0)


class CollectionOverrides(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    journal_collection: str | None = Field(default=None, alias="journal-collection")
    snaps_collection: str | None = Field(default=None, alias="snaps-collection")


class PersistencePluginConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    overrides: CollectionOverrides = Field(default_factory=CollectionOverrides)


class ReadJournalConfig(BaseModel):
    """Read journal settings.

    Attributes:
        auto_start_journals: Must name exactly one journal plugin.
        auto_start_snapshot_stores: Must name exactly one snapshot-store plugin.
        plugins: Plugin configurations keyed by plugin name.
        numeric_collation: Sort priority tags server-side with a numeric
            collation; otherwise fall back to client-side fixed-width ordering.
        priority_digits: Width of the fixed-width priority encoding.
        timestamp_collection: Optional capped collection of the timestamp ledger.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    auto_start_journals: list[str] = Field(alias="auto-start-journals")
    auto_start_snapshot_stores: list[str] = Field(alias="auto-start-snapshot-stores")
    plugins: dict[str, PersistencePluginConfig] = Field(default_factory=dict)
    numeric_collation: bool = Field(default=True, alias="numeric-collation")
    priority_digits: int = Field(
        default=DEFAULT_PRIORITY_DIGITS, gt=0, alias="priority-digits"
    )
    timestamp_collection: str | None = Field(default=None, alias="timestamp-collection")

    @model_validator(mode="after")
    def _check_collections(self) -> ReadJournalConfig:
        # Resolving eagerly surfaces every configuration error at load time.
        self.journal_collection  # noqa: B018
        self.snaps_collection  # noqa: B018
        return self

    @property
    def journal_collection(self) -> str:
        plugin = self._single_plugin(self.auto_start_journals, "auto-start-journals")
        name = plugin.overrides.journal_collection
        if not name:
            raise ValueError(
                "overrides.journal-collection must be defined for the auto-start journal"
            )
        return name

    @property
    def snaps_collection(self) -> str:
        plugin = self._single_plugin(
            self.auto_start_snapshot_stores, "auto-start-snapshot-stores"
        )
        name = plugin.overrides.snaps_collection
        if not name:
            raise ValueError(
                "overrides.snaps-collection must be defined for the auto-start "
                "snapshot store"
            )
        return name

    def _single_plugin(self, keys: list[str], setting: str) -> PersistencePluginConfig:
        if len(keys) != 1:
            raise ValueError(
                f"Expect {setting} to be a singleton list, but it is "
                f"List({', '.join(keys)})"
            )
        plugin = self.plugins.get(keys[0])
        if plugin is None:
            raise ValueError(f"No plugin configuration found for {keys[0]!r}")
        return plugin

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ReadJournalConfig:
        """Validate *data*, raising ReadJournalConfigurationError on any problem."""
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise ReadJournalConfigurationError(str(e)) from e
