from __future__ import annotations

import argparse
import os
from pathlib import Path

from marketplace_search.config import configure_logging
from marketplace_search.db import MarketplaceDB


DEMO_MERCHANTS = [
    {"name": "Nile Threads", "city": "Cairo"},
    {"name": "Aswan Collection", "city": "Aswan"},
]

DEMO_PRODUCTS = [
    {"title": "Classic Hoodie", "price": 899, "colors": ["Black", "Grey"], "sizes": ["S", "M", "L", "XL"],
     "fit": "relaxed", "gender": "unisex", "tags": ["hoodie", "casual", "winter"]},
    {"title": "Slim Fit Jeans", "price": 1199, "colors": ["Blue", "Black"], "sizes": ["30", "32", "34", "36"],
     "fit": "slim", "gender": "male", "tags": ["jeans", "denim", "pants"]},
    {"title": "Linen Shirt", "price": 749, "colors": ["White", "Beige"], "sizes": ["M", "L", "XL"],
     "fit": "regular", "gender": "male", "tags": ["shirt", "summer", "linen"]},
    {"title": "Pleated Midi Skirt", "price": 950, "colors": ["Navy", "Olive"], "sizes": ["S", "M", "L"],
     "fit": "regular", "gender": "female", "tags": ["skirt", "office"]},
    {"title": "Denim Jacket", "price": 1499, "colors": ["Blue"], "sizes": ["S", "M", "L"],
     "fit": "oversized", "gender": "unisex", "tags": ["jacket", "denim", "casual"]},
    {"title": "Cotton T-Shirt", "price": 299, "colors": ["White", "Black", "Red"], "sizes": ["S", "M", "L", "XL"],
     "fit": "regular", "gender": "unisex", "tags": ["t-shirt", "basics"]},
    {"title": "Cargo Shorts", "price": 549, "colors": ["Khaki", "Olive"], "sizes": ["30", "32", "34"],
     "fit": "relaxed", "gender": "male", "tags": ["shorts", "summer"]},
    {"title": "Espadrilles", "price": 599, "colors": ["Navy", "Beige", "Red"], "sizes": ["36", "37", "38", "39", "40"],
     "fit": "regular", "gender": "female", "tags": ["shoes", "espadrilles", "summer"]},
]


def seed(db: MarketplaceDB) -> int:
    merchants = [db.create_merchant(m["name"], m["city"]) for m in DEMO_MERCHANTS]
    brands = {m["name"]: db.create_brand(m["name"]) for m in DEMO_MERCHANTS}

    created = 0
    for i, item in enumerate(DEMO_PRODUCTS):
        merchant = merchants[i % len(merchants)]
        db.create_product(
            merchant_id=merchant["id"],
            brand_id=brands[merchant["name"]]["id"],
            title=item["title"],
            description=f"{item['title']} from {merchant['name']}.",
            price_cents=item["price"] * 100,
            colors=item["colors"],
            sizes=item["sizes"],
            fit=item["fit"],
            gender=item["gender"],
            tags=item["tags"],
            images=[f"https://picsum.photos/seed/{i}/600/800"],
        )
        created += 1
    return created


def main() -> None:
    parser = argparse.ArgumentParser(description="Load a small demo catalog.")
    parser.add_argument(
        "--db",
        default=os.getenv("MS_DB_PATH", str(Path(__file__).resolve().parents[1] / "data" / "marketplace.db")),
        help="SQLite database path",
    )
    args = parser.parse_args()

    configure_logging()
    db = MarketplaceDB(Path(os.path.expanduser(args.db)).resolve())
    count = seed(db)
    print(f"Seeded {count} products into {db.db_path}")


if __name__ == "__main__":
    main()
