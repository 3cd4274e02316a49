from dataclasses import dataclass

from catalog_updater.config import Settings


@dataclass(frozen=True)
class BatchPolicy:
    """Adaptive batch sizing for the remote service's rate budget.

    Larger tables get smaller batches so the sustained request rate stays
    under the budget; above ``large_threshold`` keys are sent one at a time.
    """

    small_threshold: int = 10
    medium_threshold: int = 50
    large_threshold: int = 100
    small_size: int = 3
    medium_size: int = 2
    large_size: int = 2
    huge_size: int = 1
    inter_batch_delay_seconds: float = 0.05

    @classmethod
    def from_settings(cls, settings: Settings) -> "BatchPolicy":
        return cls(
            small_threshold=settings.small_dataset_threshold,
            medium_threshold=settings.medium_dataset_threshold,
            large_threshold=settings.large_dataset_threshold,
            small_size=settings.small_batch_size,
            medium_size=settings.medium_batch_size,
            large_size=settings.large_batch_size,
            huge_size=settings.huge_batch_size,
            inter_batch_delay_seconds=settings.inter_batch_delay_seconds,
        )

    def batch_size(self, total_keys: int) -> int:
        if total_keys < self.small_threshold:
            size = self.small_size
        elif total_keys < self.medium_threshold:
            size = self.medium_size
        elif total_keys < self.large_threshold:
            size = self.large_size
        else:
            size = self.huge_size
        return max(size, 1)

    def plan(self, keys: list[str]) -> list[list[str]]:
        size = self.batch_size(len(keys))
        return [keys[start : start + size] for start in range(0, len(keys), size)]

    def delay_after(self, batch_index: int, total_batches: int, batch_size: int) -> float:
        """Seconds to wait after ``batch_index`` before the next batch starts.

        Constant for now; the position arguments let the policy vary by
        progress without changing callers.
        """
        if batch_index >= total_batches - 1:
            return 0.0
        return self.inter_batch_delay_seconds
