"""
Domain exceptions for the categorization service
"""


class CategorizationError(Exception):
    """Base class for categorization errors"""


class ReceiptNotFoundError(CategorizationError):
    """No receipt exists with the requested id"""

    def __init__(self, receipt_id: str):
        super().__init__(f"Receipt {receipt_id} not found")
        self.receipt_id = receipt_id


class RulesPackError(CategorizationError):
    """The rules pack as a whole could not be read (bad JSON, wrong shape)"""
