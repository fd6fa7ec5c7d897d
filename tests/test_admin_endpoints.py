from __future__ import annotations

import os
from pathlib import Path
import sys
import unittest
import urllib.parse

from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from skinreco.main import create_app
from skinreco.store.catalog import InMemoryCatalog

PRODUCT = {
    "name": "Calm Serum",
    "brand": "Derma Lab",
    "affiliate_url": "https://shop.example.com/calm-serum?ref=abc",
    "price": 24.5,
    "inci": ["Water", "Azelaic Acid"],
    "key_actives": ["Azelaic Acid"],
    "tags": ["redness", "rosacea"],
}

EVIDENCE = {
    "active_ingredient": "Azelaic Acid",
    "paper_title": "Azelaic acid in dermatology",
    "source": "J Clin Aesthet Dermatol",
    "year": 2017,
    "short_summary": "Reduces redness and post-inflammatory marks.",
    "strength_label": "strong",
}


def _make_app():
    os.environ["REDIS_URL"] = ""
    return create_app(catalog=InMemoryCatalog(), summarize=None, seed_demo_catalog=False)


class TestAdminCatalogEndpoints(unittest.TestCase):
    def test_product_crud(self) -> None:
        app = _make_app()

        with TestClient(app) as client:
            created = client.post("/v1/admin/products", json=PRODUCT)
            self.assertEqual(created.status_code, 201)
            product_id = created.json()["product"]["product_id"]

            listed = client.get("/v1/admin/products")
            self.assertEqual([p["product_id"] for p in listed.json()["products"]], [product_id])

            updated = client.put(f"/v1/admin/products/{product_id}", json={"price": 19.0})
            self.assertEqual(updated.status_code, 200)
            self.assertEqual(updated.json()["product"]["price"], 19.0)
            self.assertEqual(updated.json()["product"]["name"], "Calm Serum")

            deleted = client.delete(f"/v1/admin/products/{product_id}")
            self.assertEqual(deleted.status_code, 200)

            missing = client.get(f"/v1/admin/products/{product_id}")
            self.assertEqual(missing.status_code, 404)
            self.assertEqual(missing.json()["error"], "not_found")

    def test_invalid_evidence_payload_is_rejected(self) -> None:
        app = _make_app()

        with TestClient(app) as client:
            res = client.post("/v1/admin/evidence", json={**EVIDENCE, "strength_label": "anecdotal"})

        self.assertEqual(res.status_code, 422)
        self.assertEqual(res.json()["error"], "invalid_request")

    def test_null_for_required_field_is_rejected_on_update(self) -> None:
        app = _make_app()

        with TestClient(app) as client:
            product_id = client.post("/v1/admin/products", json=PRODUCT).json()["product"]["product_id"]
            evidence_id = client.post("/v1/admin/evidence", json=EVIDENCE).json()["evidence"]["evidence_id"]

            product_res = client.put(f"/v1/admin/products/{product_id}", json={"name": None})
            tags_res = client.put(f"/v1/admin/products/{product_id}", json={"tags": None})
            evidence_res = client.put(f"/v1/admin/evidence/{evidence_id}", json={"year": None})
            cleared = client.put(f"/v1/admin/products/{product_id}", json={"price": None})
            unchanged = client.get(f"/v1/admin/products/{product_id}").json()["product"]

        for res in (product_res, tags_res, evidence_res):
            self.assertEqual(res.status_code, 422)
            self.assertEqual(res.json()["error"], "invalid_request")
        self.assertEqual(cleared.status_code, 200)
        self.assertNotIn("price", cleared.json()["product"])
        self.assertEqual(unchanged["name"], "Calm Serum")

    def test_non_url_links_are_rejected(self) -> None:
        app = _make_app()

        with TestClient(app) as client:
            bad_product = client.post("/v1/admin/products", json={**PRODUCT, "affiliate_url": "not a url"})
            bad_image = client.post("/v1/admin/products", json={**PRODUCT, "image_url": "/images/calm.png"})
            bad_evidence = client.post("/v1/admin/evidence", json={**EVIDENCE, "pubmed_url": "pubmed 123"})
            product_id = client.post("/v1/admin/products", json=PRODUCT).json()["product"]["product_id"]
            bad_update = client.put(f"/v1/admin/products/{product_id}", json={"affiliate_url": "ftp-less"})
            listed = client.get("/v1/admin/products").json()["products"]

        for res in (bad_product, bad_image, bad_evidence, bad_update):
            self.assertEqual(res.status_code, 422)
            self.assertEqual(res.json()["error"], "invalid_request")
        self.assertEqual(len(listed), 1)
        self.assertEqual(listed[0]["affiliate_url"], PRODUCT["affiliate_url"])

    def test_link_twice_keeps_one_link_and_unlink_missing_is_noop(self) -> None:
        app = _make_app()

        with TestClient(app) as client:
            product_id = client.post("/v1/admin/products", json=PRODUCT).json()["product"]["product_id"]
            evidence_id = client.post("/v1/admin/evidence", json=EVIDENCE).json()["evidence"]["evidence_id"]
            body = {"product_id": product_id, "evidence_id": evidence_id}

            self.assertEqual(client.post("/v1/admin/link-product-evidence", json=body).status_code, 200)
            self.assertEqual(client.post("/v1/admin/link-product-evidence", json=body).status_code, 200)

            detail = client.get(f"/v1/admin/products/{product_id}").json()
            self.assertEqual([e["evidence_id"] for e in detail["evidence"]], [evidence_id])

            first = client.request("DELETE", "/v1/admin/unlink-product-evidence", json=body)
            second = client.request("DELETE", "/v1/admin/unlink-product-evidence", json=body)
            self.assertEqual(first.status_code, 200)
            self.assertEqual(second.status_code, 200)

            detail = client.get(f"/v1/admin/products/{product_id}").json()
            self.assertEqual(detail["evidence"], [])

    def test_link_unknown_product_is_404(self) -> None:
        app = _make_app()

        with TestClient(app) as client:
            evidence_id = client.post("/v1/admin/evidence", json=EVIDENCE).json()["evidence"]["evidence_id"]
            res = client.post(
                "/v1/admin/link-product-evidence",
                json={"product_id": "missing", "evidence_id": evidence_id},
            )

        self.assertEqual(res.status_code, 404)


class TestAffiliateEndpoints(unittest.TestCase):
    def test_redirect_adds_utm_and_counts_click(self) -> None:
        app = _make_app()

        with TestClient(app) as client:
            product_id = client.post("/v1/admin/products", json=PRODUCT).json()["product"]["product_id"]
            res = client.get(
                f"/v1/affiliate/{product_id}",
                params={"analysisId": "a1", "userId": "u1", "utmCampaign": "spring"},
                follow_redirects=False,
            )
            stats = client.get("/v1/affiliate/stats").json()["stats"]

        self.assertEqual(res.status_code, 307)
        location = urllib.parse.urlsplit(res.headers["location"])
        query = dict(urllib.parse.parse_qsl(location.query))
        self.assertEqual(location.netloc, "shop.example.com")
        self.assertEqual(query["ref"], "abc")
        self.assertEqual(query["utm_source"], "skincare_app")
        self.assertEqual(query["utm_medium"], "recommendation")
        self.assertEqual(query["utm_campaign"], "spring")

        self.assertEqual(len(stats), 1)
        self.assertEqual(stats[0]["product_id"], product_id)
        self.assertEqual(stats[0]["product_name"], "Calm Serum")
        self.assertEqual(stats[0]["total_clicks"], 1)

    def test_stats_list_unclicked_products_and_filter_by_date(self) -> None:
        app = _make_app()

        with TestClient(app) as client:
            clicked = client.post("/v1/admin/products", json=PRODUCT).json()["product"]["product_id"]
            quiet = client.post("/v1/admin/products", json={**PRODUCT, "name": "Quiet Balm"}).json()["product"]["product_id"]
            client.get(f"/v1/affiliate/{clicked}", follow_redirects=False)
            client.get(f"/v1/affiliate/{clicked}", follow_redirects=False)

            all_time = client.get("/v1/affiliate/stats").json()["stats"]
            future = client.get("/v1/affiliate/stats", params={"startDate": "2999-01-01T00:00:00Z"}).json()["stats"]
            one = client.get("/v1/affiliate/stats", params={"productId": quiet}).json()["stats"]

        self.assertEqual(
            [(s["product_id"], s["total_clicks"]) for s in all_time],
            [(clicked, 2), (quiet, 0)],
        )
        self.assertEqual(all_time[1]["product_name"], "Quiet Balm")
        self.assertEqual(sorted(s["total_clicks"] for s in future), [0, 0])
        self.assertEqual(
            one,
            [{"product_id": quiet, "product_name": "Quiet Balm", "total_clicks": 0, "unique_users": 0, "unique_analyses": 0}],
        )

    def test_unknown_product_is_404(self) -> None:
        app = _make_app()

        with TestClient(app) as client:
            res = client.get("/v1/affiliate/unknown", follow_redirects=False)

        self.assertEqual(res.status_code, 404)
