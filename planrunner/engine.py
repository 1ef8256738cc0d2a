"""Engine — the top-level entity wiring store, executor and lifecycle together."""

from __future__ import annotations

import logging
from pathlib import Path

from planrunner import config
from planrunner.events import EventBus
from planrunner.executor import Executor
from planrunner.lifecycle import ExecutionManager
from planrunner.models import ExecutionContext
from planrunner.providers.base import CapabilityProvider
from planrunner.providers.local import LocalVaultProvider
from planrunner.store import PlanStore
from planrunner.tools.registry import create_default_registry
from planrunner.validator import PlanValidator

logger = logging.getLogger(__name__)


class Engine:
    """One plan store, one execution slot, one capability provider."""

    def __init__(
        self,
        data_dir: Path | None = None,
        vault_dir: Path | None = None,
        provider: CapabilityProvider | None = None,
        max_concurrency: int | None = None,
    ):
        self.data_dir = Path(data_dir or config.DATA_DIR)
        self.vault_dir = Path(vault_dir or config.VAULT_DIR)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        self.event_bus = EventBus(log_file=self.data_dir / "events.jsonl")
        self.registry = create_default_registry()
        self.validator = PlanValidator(self.registry)
        self.store = PlanStore(self.data_dir / "plans.json", validator=self.validator, event_bus=self.event_bus)
        self.store.load()

        self.provider = provider or LocalVaultProvider(self.vault_dir, registry=self.registry)
        self.executor = Executor(self.provider, max_concurrency=max_concurrency)
        self.manager = ExecutionManager(self.store, self.executor, environment=self.new_context)

        logger.info(f"Engine ready: data={self.data_dir} vault={self.vault_dir}")

    def new_context(self) -> ExecutionContext:
        """Ambient environment handed to every fresh run."""
        return ExecutionContext(vault_path=str(self.vault_dir))
