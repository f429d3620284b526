from intake_queue.db.engine import Database
from intake_queue.db.models import Base, ClassificationJob, ImportItem, ImportRun

__all__ = ["Base", "ClassificationJob", "Database", "ImportItem", "ImportRun"]
