"""
Product catalogue.

Every assessment product goes through the same purchase flow; what differs is
the backend path segment and the base price.
"""
from dataclasses import dataclass


@dataclass(frozen=True)
class ProductDescriptor:
    kind: str
    path_segment: str
    display_name: str
    base_amount: int  # IDR


@dataclass(frozen=True)
class ProductRef:
    """One purchasable instance: a finished test of some product."""

    product: ProductDescriptor
    instance_id: str

    @property
    def key(self) -> str:
        return f"{self.product.kind}:{self.instance_id}"

    @property
    def orders_path(self) -> str:
        return f"/users/{self.product.path_segment}/{self.instance_id}/orders"

    def __str__(self) -> str:
        return self.key


VARK = ProductDescriptor("vark", "vark_tests", "VARK Learning Style", 30000)
AI_KNOWLEDGE = ProductDescriptor("ai_knowledge", "ai_knowledge_tests", "AI Knowledge", 30000)
BEHAVIORAL = ProductDescriptor(
    "behavioral", "behavioral_learning_tests", "Behavioral Learning", 30000
)
COMPREHENSIVE = ProductDescriptor(
    "comprehensive", "comprehensive_assessment_tests", "Comprehensive Assessment", 50000
)
TPA = ProductDescriptor("tpa", "tpa_tests", "TPA Assessment", 50000)

PRODUCTS = {p.kind: p for p in (VARK, AI_KNOWLEDGE, BEHAVIORAL, COMPREHENSIVE, TPA)}
PRODUCTS_BY_SEGMENT = {p.path_segment: p for p in PRODUCTS.values()}


def get_product(kind: str) -> ProductDescriptor:
    try:
        return PRODUCTS[kind]
    except KeyError:
        raise KeyError(f"Unknown product kind: {kind}") from None
