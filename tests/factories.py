"""
Provider payload builders shared by the test suite
"""


def make_product(product_id, brands=(), categories=(), organizations=(), photos=(), families=(), ingredients=()):
    return {
        "id": product_id,
        "status": "active",
        "name": {"en": f"Product {product_id}", "nl": f"Product {product_id} NL"},
        "seoName": {"en": f"product-{product_id}".lower()},
        "ean": ["12345678", "1234567890123"],
        "snomed": {"mp": "mp-1", "tpp": "tpp-1"},
        "publicPrice": 1299,
        "biocide": False,
        "brands": [{"id": b} for b in brands],
        "publicCategories": [{"id": c} for c in categories],
        "organizations": [{"id": o} for o in organizations],
        "photos": [{"id": p} for p in photos],
        "productFamilies": [{"id": f} for f in families],
        "activeIngredients": [{"id": i} for i in ingredients],
        "meta": {"createdAt": 1700000000, "updatedAt": 1705314600},
    }


def make_brand(brand_id, organizations=()):
    return {
        "id": brand_id,
        "name": f"Brand {brand_id}",
        "organizations": [{"id": o} for o in organizations],
    }


def make_organization(org_id):
    return {"id": org_id, "name": f"Organization {org_id}", "type": "supplier"}


def make_category(category_id, parent=None, order=0):
    return {
        "id": category_id,
        "name": {"en": f"Category {category_id}"},
        "order": order,
        "parent": {"id": parent} if parent is not None else None,
    }


def make_page(results, total=None):
    body = {"results": results}
    if total is not None:
        body["meta"] = {"total": total}
    return body


