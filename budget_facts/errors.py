class BudgetFactsError(Exception):
    """Base class for contract errors raised by the fact engine."""


class DraftNotFoundError(BudgetFactsError, LookupError):
    def __init__(self, draft_id: int) -> None:
        super().__init__(f"Draft not found: {draft_id}")
        self.draft_id = draft_id
