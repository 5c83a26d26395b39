"""
Conditional activation: capabilities registered only for installations
in a given experiment, with their handles released on shutdown.
"""
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Protocol

from expgate.logging_config import setup_logging
from expgate.manager import ExperimentsManager

logger = setup_logging()


class Disposable(Protocol):
    def dispose(self) -> None:
        ...


class DisposableRegistry:
    """
    Ordered collection of disposables created during activation.

    dispose() releases entries in reverse registration order. Every entry is
    released even if an earlier one fails; the first failure is re-raised
    once the registry is drained.
    """

    def __init__(self):
        self._items: List[Disposable] = []

    def add(self, disposable: Disposable) -> None:
        self._items.append(disposable)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))

    def dispose(self) -> None:
        first_error: Optional[Exception] = None
        while self._items:
            item = self._items.pop()
            try:
                item.dispose()
            except Exception as e:
                logger.error(f"Failed to dispose {item!r}", extra={"error": str(e)}, exc_info=True)
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    def __enter__(self) -> "DisposableRegistry":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()


class ConditionalActivationService(ABC):
    """
    Base class for services gated on one experiment.

    Subclasses set `experiment` and implement register(). activate() is
    idempotent: the membership check and registration happen once.
    """

    experiment: str = ""

    def __init__(self, experiments: ExperimentsManager, disposables: DisposableRegistry):
        self.experiments = experiments
        self.disposables = disposables
        self._activated = False

    async def activate(self) -> None:
        if self._activated:
            return
        self._activated = True

        if not await self.experiments.in_experiment(self.experiment):
            logger.info("Not in experiment, skipping registration", extra={"exp_name": self.experiment})
            return

        # Registration errors belong to the caller, not the experiments engine
        disposable = self.register()
        if disposable is not None:
            self.disposables.add(disposable)
        logger.info("Experimental capability registered", extra={"exp_name": self.experiment})

    @abstractmethod
    def register(self) -> Optional[Disposable]:
        """Register the experimental capability; return its disposable, if any."""


# Experiment groups consumed by activation services
class DebugAdapterDescriptorFactoryGroup:
    experiment = "DebugAdapterFactory - experiment"
    control = "DebugAdapterFactory - control"


class DebugService(Protocol):
    def register_debug_adapter_descriptor_factory(self, debug_type: str, factory: Any) -> Optional[Disposable]:
        ...


class DebugAdapterActivator(ConditionalActivationService):
    """Registers the new debug adapter descriptor factory for the experiment arm."""

    experiment = DebugAdapterDescriptorFactoryGroup.experiment
    debug_type = "python"

    def __init__(
        self,
        debug_service: DebugService,
        factory: Any,
        disposables: DisposableRegistry,
        experiments: ExperimentsManager,
    ):
        super().__init__(experiments, disposables)
        self.debug_service = debug_service
        self.factory = factory

    def register(self) -> Optional[Disposable]:
        return self.debug_service.register_debug_adapter_descriptor_factory(self.debug_type, self.factory)
