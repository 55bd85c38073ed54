from scheduleflow.models.draft_store import DraftStoreEntry  # noqa: F401
