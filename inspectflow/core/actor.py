"""
Actor context — the already-authenticated caller of an engine operation.

Built by the JWT middleware from the bearer token claims and trusted as
verified. Services never look at the request; they receive an ActorContext.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ActorContext:
    user_id: int
    role: str
    shop_id: int

    @classmethod
    def from_claims(cls, claims: dict) -> "ActorContext":
        """Build an actor from decoded JWT claims (``sub``, ``role``, ``shop_id``)."""
        return cls(
            user_id=int(claims["sub"]),
            role=str(claims["role"]),
            shop_id=int(claims["shop_id"]),
        )

    def to_dict(self) -> dict:
        return {"user_id": self.user_id, "role": self.role, "shop_id": self.shop_id}
