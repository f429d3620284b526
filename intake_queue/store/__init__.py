from intake_queue.store.classification import ClassificationJobStore
from intake_queue.store.items import ItemStore
from intake_queue.store.runs import EnqueueResult, QueueOverview, RunStore

__all__ = [
    "ClassificationJobStore",
    "EnqueueResult",
    "ItemStore",
    "QueueOverview",
    "RunStore",
]
