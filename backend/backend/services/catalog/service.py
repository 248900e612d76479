from __future__ import annotations

from sqlalchemy.orm import Session

from app.core.errors import NotFoundError
from app.db.models.catalog import Product
from services.manufacturing.planning import BomRequirement


def get_product(db: Session, product_id: str) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product", product_id)
    return product


def product_bom(product: Product) -> list[BomRequirement]:
    """Flattened BOM: product-level lines and sub-component lines alike."""
    return [
        BomRequirement(material_id=line.material_id, quantity_required=line.quantity_required, uom=line.uom)
        for line in product.bom_lines
    ]
