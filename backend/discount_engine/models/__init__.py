from discount_engine.db.base import Base  # noqa: F401
from discount_engine.models.discount import (  # noqa: F401
    CustomerDiscountUse,
    Discount,
    DiscountCategory,
    DiscountPurchasable,
    DiscountRedemption,
    DiscountUserGroup,
    EmailDiscountUse,
)
