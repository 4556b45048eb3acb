"""
Result containers for multi-record sync operations.

A batch never raises for a single bad record: the record and its error are
reported in `failed` and the remaining records keep going.
"""
from dataclasses import dataclass, field


@dataclass
class BatchFailure:
    item: dict
    error: str
    store: str = None

    def to_dict(self):
        out = {'item': self.item, 'error': self.error}
        if self.store:
            out['type'] = self.store
        return out


@dataclass
class BatchResult:
    succeeded: dict = field(default_factory=dict)
    failed: list = field(default_factory=list)

    def add_success(self, store, count=1):
        self.succeeded[store] = self.succeeded.get(store, 0) + count

    def add_failure(self, store, item, error):
        self.failed.append(BatchFailure(item=item, error=str(error), store=store))

    @property
    def total_succeeded(self):
        return sum(self.succeeded.values())

    def to_dict(self):
        return {
            'succeeded': dict(self.succeeded),
            'failed': [f.to_dict() for f in self.failed],
        }
