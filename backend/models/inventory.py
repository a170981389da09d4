# backend/models/inventory.py
from pydantic import BaseModel, Field, ConfigDict, computed_field


# ============== Base Schemas ==============

class InventoryEntry(BaseModel):
    """One (account, item) balance. A missing row means quantity 0."""
    account_id: str
    item_id: str
    quantity: int = Field(default=0, ge=0, description="Units held")

    model_config = ConfigDict(from_attributes=True)


# ============== Action Schemas ==============

class InventoryGrant(BaseModel):
    """Schema for crediting items to an account (rewards, admin seeding)."""
    item_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)


# ============== Response Schemas ==============

class InventoryResponse(BaseModel):
    """All non-zero balances of one account."""
    account_id: str
    items: list[InventoryEntry] = []

    @computed_field
    @property
    def total_items(self) -> int:
        """Sum of all item quantities."""
        return sum(entry.quantity for entry in self.items)

    @classmethod
    def from_balances(cls, account_id: str, balances: dict[str, int]) -> "InventoryResponse":
        return cls(
            account_id=account_id,
            items=[
                InventoryEntry(account_id=account_id, item_id=item_id, quantity=quantity)
                for item_id, quantity in sorted(balances.items())
            ],
        )
