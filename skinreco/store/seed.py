from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Any

from skinreco.models import EvidenceCreate, ProductCreate

logger = logging.getLogger("skinreco.seed")

DEMO_EVIDENCE: list[dict[str, Any]] = [
    {
        "active_ingredient": "Niacinamide",
        "paper_title": "Nicotinamide improves the appearance of aged skin",
        "source": "International Journal of Cosmetic Science",
        "year": 2010,
        "short_summary": "Clinical studies show niacinamide improves skin texture, reduces hyperpigmentation, and minimizes pore appearance.",
        "strength_label": "strong",
        "pubmed_url": "https://pubmed.ncbi.nlm.nih.gov/20653858/",
    },
    {
        "active_ingredient": "Retinol",
        "paper_title": "Retinoids in the treatment of skin aging",
        "source": "Clinical Interventions in Aging",
        "year": 2006,
        "short_summary": "Retinol stimulates collagen production, reduces fine lines, and improves skin texture through increased cell turnover.",
        "strength_label": "strong",
        "pubmed_url": "https://pubmed.ncbi.nlm.nih.gov/18044138/",
    },
    {
        "active_ingredient": "Vitamin C",
        "paper_title": "Vitamin C in dermatology",
        "source": "Indian Dermatology Online Journal",
        "year": 2013,
        "short_summary": "Vitamin C brightens skin, reduces hyperpigmentation, and provides antioxidant protection against environmental damage.",
        "strength_label": "strong",
        "pubmed_url": "https://pubmed.ncbi.nlm.nih.gov/23741666/",
    },
    {
        "active_ingredient": "Salicylic Acid",
        "paper_title": "Salicylic acid as a peeling agent",
        "source": "Dermatologic Surgery",
        "year": 2008,
        "short_summary": "Salicylic acid penetrates pores, reduces acne formation, and exfoliates dead skin cells effectively.",
        "strength_label": "strong",
        "pubmed_url": "https://pubmed.ncbi.nlm.nih.gov/18076607/",
    },
    {
        "active_ingredient": "Hyaluronic Acid",
        "paper_title": "Hyaluronic acid: A key molecule in skin aging",
        "source": "Dermato-Endocrinology",
        "year": 2012,
        "short_summary": "Hyaluronic acid provides intense hydration, plumps skin, and reduces the appearance of fine lines.",
        "strength_label": "strong",
        "pubmed_url": "https://pubmed.ncbi.nlm.nih.gov/22837749/",
    },
    {
        "active_ingredient": "Azelaic Acid",
        "paper_title": "Azelaic acid in dermatology",
        "source": "Journal of Clinical and Aesthetic Dermatology",
        "year": 2017,
        "short_summary": "Azelaic acid reduces hyperpigmentation, treats acne, and has anti-inflammatory properties for rosacea.",
        "strength_label": "strong",
        "pubmed_url": "https://www.ncbi.nlm.nih.gov/pmc/articles/PMC5574737/",
    },
    {
        "active_ingredient": "Peptides",
        "paper_title": "Peptides in skin aging",
        "source": "Journal of Cosmetic Dermatology",
        "year": 2015,
        "short_summary": "Peptides stimulate collagen synthesis, improve skin firmness, and reduce the appearance of wrinkles.",
        "strength_label": "moderate",
    },
    {
        "active_ingredient": "Ceramides",
        "paper_title": "Ceramides in the skin barrier",
        "source": "American Journal of Clinical Dermatology",
        "year": 2003,
        "short_summary": "Ceramides strengthen skin barrier, prevent moisture loss, and improve overall skin hydration.",
        "strength_label": "strong",
        "pubmed_url": "https://pubmed.ncbi.nlm.nih.gov/12553851/",
    },
    {
        "active_ingredient": "Alpha Arbutin",
        "paper_title": "Arbutin in skin lightening",
        "source": "Journal of Drugs in Dermatology",
        "year": 2013,
        "short_summary": "Alpha arbutin inhibits melanin production and effectively reduces dark spots and hyperpigmentation.",
        "strength_label": "moderate",
    },
    {
        "active_ingredient": "Tranexamic Acid",
        "paper_title": "Tranexamic acid for melasma",
        "source": "Dermatologic Surgery",
        "year": 2016,
        "short_summary": "Tranexamic acid reduces melanin production and is effective for treating stubborn hyperpigmentation.",
        "strength_label": "moderate",
        "pubmed_url": "https://pubmed.ncbi.nlm.nih.gov/27537949/",
    },
]

DEMO_PRODUCTS: list[dict[str, Any]] = [
    {
        "name": "CeraVe Renewing SA Cleanser",
        "brand": "CeraVe",
        "affiliate_url": "https://www.amazon.com/CeraVe-Renewing-Cleanser-Salicylic-Exfoliates/dp/B00U1YCRD8?tag=example-20",
        "price": 14.99,
        "inci": ["Water", "Sodium Lauroyl Sarcosinate", "Glycerin", "Niacinamide", "Salicylic Acid", "Ceramide NP", "Hyaluronic Acid"],
        "key_actives": ["Salicylic Acid", "Niacinamide", "Ceramides", "Hyaluronic Acid"],
        "tags": ["acne", "oily_skin", "enlarged_pores", "exfoliation", "rough_texture"],
        "description": "Gentle cleanser with salicylic acid to exfoliate and smooth skin while maintaining barrier function.",
    },
    {
        "name": "The Ordinary Niacinamide 10% + Zinc 1%",
        "brand": "The Ordinary",
        "affiliate_url": "https://www.sephora.com/product/the-ordinary-niacinamide-10-zinc-1-P427417?tag=example-20",
        "price": 5.90,
        "inci": ["Water", "Niacinamide", "Pentylene Glycol", "Zinc PCA", "Tamarindus Indica Seed Gum", "Xanthan Gum"],
        "key_actives": ["Niacinamide"],
        "tags": ["enlarged_pores", "oily_skin", "acne", "uneven_tone", "hyperpigmentation"],
        "description": "High-strength niacinamide serum to reduce pore appearance and balance oil production.",
    },
    {
        "name": "Paula's Choice 2% BHA Liquid Exfoliant",
        "brand": "Paula's Choice",
        "affiliate_url": "https://www.paulaschoice.com/skin-perfecting-2pct-bha-liquid-exfoliant/201.html?tag=example-20",
        "price": 32.00,
        "inci": ["Water", "Methylpropanediol", "Butylene Glycol", "Salicylic Acid", "Polysorbate 20", "Green Tea Extract"],
        "key_actives": ["Salicylic Acid"],
        "tags": ["acne", "blackheads", "enlarged_pores", "oily_skin", "rough_texture"],
        "description": "Gentle BHA exfoliant that unclogs pores and smooths skin texture.",
    },
    {
        "name": "Skinceuticals C E Ferulic",
        "brand": "SkinCeuticals",
        "affiliate_url": "https://www.skinceuticals.com/c-e-ferulic-635494263008.html?tag=example-20",
        "price": 169.00,
        "inci": ["Water", "Ethoxydiglycol", "L-Ascorbic Acid", "Alpha Tocopherol", "Ferulic Acid", "Panthenol"],
        "key_actives": ["Vitamin C", "Vitamin E"],
        "tags": ["hyperpigmentation", "dark_spots", "dullness", "antioxidant", "brightening", "fine_lines"],
        "description": "Gold-standard vitamin C serum for brightening and antioxidant protection.",
    },
    {
        "name": "Neutrogena Hydro Boost Water Gel",
        "brand": "Neutrogena",
        "affiliate_url": "https://www.amazon.com/Neutrogena-Hydro-Boost-Hyaluronic-Moisturizer/dp/B00NR1YQHM?tag=example-20",
        "price": 18.97,
        "inci": ["Water", "Dimethicone", "Glycerin", "Cetearyl Olivate", "Sodium Hyaluronate", "Olive Extract"],
        "key_actives": ["Hyaluronic Acid"],
        "tags": ["dryness", "dehydration", "dullness", "sensitive_skin"],
        "description": "Lightweight water-gel moisturizer with hyaluronic acid for intense hydration.",
    },
    {
        "name": "La Roche-Posay Retinol B3 Serum",
        "brand": "La Roche-Posay",
        "affiliate_url": "https://www.laroche-posay.us/retinol-b3-serum-3337875597036.html?tag=example-20",
        "price": 49.99,
        "inci": ["Water", "Glycerin", "Caprylic/Capric Triglyceride", "Retinol", "Niacinamide", "Adenosine"],
        "key_actives": ["Retinol", "Niacinamide"],
        "tags": ["fine_lines", "wrinkles", "aging", "uneven_texture", "dark_spots"],
        "description": "Pure retinol combined with niacinamide to reduce signs of aging with minimal irritation.",
    },
    {
        "name": "The Inkey List Azelaic Acid Serum",
        "brand": "The INKEY List",
        "affiliate_url": "https://www.sephora.com/product/the-inkey-list-azelaic-acid-serum-P455087?tag=example-20",
        "price": 10.99,
        "inci": ["Water", "Azelaic Acid", "Glycerin", "Sodium Hyaluronate", "Allantoin"],
        "key_actives": ["Azelaic Acid", "Hyaluronic Acid"],
        "tags": ["hyperpigmentation", "acne", "redness", "rosacea", "uneven_tone", "dark_spots"],
        "description": "Multi-tasking azelaic acid serum to address redness, hyperpigmentation, and breakouts.",
    },
    {
        "name": "Olay Regenerist Micro-Sculpting Cream",
        "brand": "Olay",
        "affiliate_url": "https://www.amazon.com/Olay-Regenerist-Micro-Sculpting-Moisturizer-Fragrance/dp/B004D2C23Y?tag=example-20",
        "price": 28.99,
        "inci": ["Water", "Glycerin", "Niacinamide", "Dimethicone", "Peptides", "Hyaluronic Acid"],
        "key_actives": ["Niacinamide", "Peptides", "Hyaluronic Acid"],
        "tags": ["fine_lines", "wrinkles", "aging", "firmness", "dryness"],
        "description": "Advanced anti-aging cream with peptides and niacinamide to improve skin firmness.",
    },
    {
        "name": "CeraVe PM Facial Moisturizing Lotion",
        "brand": "CeraVe",
        "affiliate_url": "https://www.amazon.com/CeraVe-Facial-Moisturizing-Lotion-Lightweight/dp/B00365DABC?tag=example-20",
        "price": 16.08,
        "inci": ["Water", "Glycerin", "Niacinamide", "Ceramide NP", "Ceramide AP", "Hyaluronic Acid"],
        "key_actives": ["Niacinamide", "Ceramides", "Hyaluronic Acid"],
        "tags": ["dryness", "sensitive_skin", "barrier_repair", "uneven_tone"],
        "description": "Lightweight night moisturizer with ceramides to restore skin barrier.",
    },
    {
        "name": "Cos De BAHA Tranexamic Acid Serum",
        "brand": "Cos De BAHA",
        "affiliate_url": "https://www.amazon.com/Cos-Baha-Tranexamic-Niacinamide-Hyperpigmentation/dp/B08QV8XQYX?tag=example-20",
        "price": 17.99,
        "inci": ["Water", "Tranexamic Acid", "Niacinamide", "Alpha Arbutin", "Glycerin", "Hyaluronic Acid"],
        "key_actives": ["Tranexamic Acid", "Niacinamide", "Alpha Arbutin"],
        "tags": ["hyperpigmentation", "dark_spots", "melasma", "brightening", "uneven_tone"],
        "description": "Powerful brightening serum with tranexamic acid to fade stubborn dark spots.",
    },
    {
        "name": "First Aid Beauty Ultra Repair Cream",
        "brand": "First Aid Beauty",
        "affiliate_url": "https://www.sephora.com/product/ultra-repair-cream-P248407?tag=example-20",
        "price": 36.00,
        "inci": ["Water", "Colloidal Oatmeal", "Glycerin", "Ceramides", "Shea Butter", "Allantoin"],
        "key_actives": ["Ceramides", "Colloidal Oatmeal"],
        "tags": ["dryness", "sensitive_skin", "redness", "barrier_repair", "eczema"],
        "description": "Intensive repair cream for dry, sensitive, and eczema-prone skin.",
    },
    {
        "name": "Good Molecules Discoloration Correcting Serum",
        "brand": "Good Molecules",
        "affiliate_url": "https://www.beautylish.com/s/good-molecules-discoloration-correcting-serum?tag=example-20",
        "price": 12.00,
        "inci": ["Water", "Tranexamic Acid", "Niacinamide", "Kojic Acid", "Licorice Root Extract"],
        "key_actives": ["Tranexamic Acid", "Niacinamide"],
        "tags": ["hyperpigmentation", "dark_spots", "post_inflammatory", "brightening"],
        "description": "Multi-ingredient serum targeting discoloration and uneven skin tone.",
    },
]


async def seed_catalog(catalog: Any) -> dict[str, int]:
    """Load the demo catalog and link each product to evidence for its key actives."""
    created_evidence = [await catalog.evidence.create(EvidenceCreate.model_validate(row)) for row in DEMO_EVIDENCE]

    links = 0
    for row in DEMO_PRODUCTS:
        product = await catalog.products.create(ProductCreate.model_validate(row))
        actives = {a.lower() for a in product.key_actives}
        for evidence in created_evidence:
            if evidence.active_ingredient.lower() in actives:
                await catalog.evidence.link_product_to_evidence(product.product_id, evidence.evidence_id)
                links += 1

    counts = {"evidence": len(created_evidence), "products": len(DEMO_PRODUCTS), "links": links}
    logger.info("catalog_seeded evidence=%s products=%s links=%s", counts["evidence"], counts["products"], links)
    return counts


async def _seed_database(database_url: str) -> None:
    from skinreco.store.catalog_postgres import PostgresCatalog

    catalog = PostgresCatalog(database_url=database_url)
    await catalog.initialize()
    try:
        await seed_catalog(catalog)
    finally:
        await catalog.close()


def main() -> int:
    logging.basicConfig(level="INFO", format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if not database_url:
        logger.error("DATABASE_URL is required to seed a database")
        return 1
    asyncio.run(_seed_database(database_url))
    return 0


if __name__ == "__main__":
    sys.exit(main())
