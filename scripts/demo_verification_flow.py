"""Demo: walk a credential from draft to verified using FastAPI TestClient.

Run with:
    python scripts/demo_verification_flow.py

Two candidates take the two billing paths:
  - ada has a candidate_free subscription → entitlement covers the request
  - bob has no plan → 402 with a payment obligation, then the payment
    collaborator reports completion
A verifier then claims and verifies both requests.
"""

from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

from app.db.ledger import ledger
from app.main import app
from app.repos.ledger import USERS, Write
from app.services import token_service


def _headers(sub: str, roles: list[str] | None = None) -> dict[str, str]:
    token = token_service.create_access_token(sub=sub, roles=roles)
    return {"Authorization": f"Bearer {token}"}


def _create_credential(client: TestClient, headers: dict[str, str], title: str) -> str:
    resp = client.post(
        "/v1/credentials",
        json={"type": "certificate", "title": title, "issuer": "Linux Foundation"},
        headers=headers,
    )
    resp.raise_for_status()
    return resp.json()["id"]


def main() -> None:
    client = TestClient(app)

    # ── Seed profiles ───────────────────────────────────────────────
    asyncio.run(
        ledger.commit(
            [
                Write(USERS, "ada", {"subscription": {"plan": "candidate_free", "status": "active"}}),
                Write(USERS, "bob", {"skills": ["Go", "Terraform"]}),
            ]
        )
    )
    ada, bob = _headers("ada"), _headers("bob")
    verifier = _headers("vera", roles=["verifier"])

    # ── Entitlement path ────────────────────────────────────────────
    ada_cred = _create_credential(client, ada, "CKA")
    resp = client.post(f"/v1/credentials/{ada_cred}/verification", headers=ada)
    print(f"ada requests verification → {resp.status_code} via {resp.json()['clearance_source']}")
    ada_request = resp.json()["id"]

    # ── Payment path ────────────────────────────────────────────────
    quote = client.get("/v1/billing/quote/verification_fee", headers=bob).json()
    print(f"bob's quote: {quote['amount']} {quote['currency']} ({quote['adjustment']})")

    bob_cred = _create_credential(client, bob, "CKS")
    resp = client.post(f"/v1/credentials/{bob_cred}/verification", headers=bob)
    payment = resp.json()["payment"]
    print(f"bob requests verification → {resp.status_code}, payment {payment['id']}")

    resp = client.post(
        "/v1/payments/completions",
        json={
            "payment_id": payment["id"],
            "action_type": "verification_fee",
            "target_id": bob_cred,
            "status": "completed",
        },
    )
    outcome = resp.json()
    print(f"payment completion → {outcome['result']}")
    bob_request = outcome["verification_request_id"]

    # ── Review ──────────────────────────────────────────────────────
    for request_id in (ada_request, bob_request):
        client.post(
            f"/v1/verification/requests/{request_id}/advance",
            json={"status": "inProgress"},
            headers=verifier,
        ).raise_for_status()
        resp = client.post(
            f"/v1/verification/requests/{request_id}/advance",
            json={"status": "verified", "note": "issuer registry checked"},
            headers=verifier,
        )
        resp.raise_for_status()
        print(f"request {request_id} → {resp.json()['status']}")

    for name, headers, credential_id in (("ada", ada, ada_cred), ("bob", bob, bob_cred)):
        credential = client.get(f"/v1/credentials/{credential_id}", headers=headers).json()
        print(
            f"{name}: {credential['title']} {credential['verification_status']} "
            f"attestation={credential['attestation_hash'][:16]}…"
        )

    # ── Matching ────────────────────────────────────────────────────
    resp = client.post(
        "/v1/matching/candidates/bob/assess",
        json={"required_skills": ["go", "kubernetes", "cks"], "job_title": "Platform Engineer"},
        headers=verifier,
    )
    score = resp.json()["score"]
    print(f"bob matches {score['percentage']}% (verification strength {score['verification_strength']})")


if __name__ == "__main__":
    main()
