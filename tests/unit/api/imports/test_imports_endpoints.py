import csv
import io

import pytest
from httpx import AsyncClient

from app.api.v1 import dependencies
from app.core.security import create_access_token
from app.main import app

BASE = "/api/v1/import"


async def upload(client: AsyncClient, content: str, file_name: str = "patients.csv") -> dict:
    response = await client.post(f"{BASE}/patients/upload", json={"content": content, "file_name": file_name})
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_full_import_scenario(async_client: AsyncClient, scenario_csv, scenario_mapping):
    uploaded = await upload(async_client, scenario_csv)
    assert uploaded["status"] == "pending"
    assert uploaded["previous_job_id"] is None
    job_id = uploaded["job_id"]

    detected = await async_client.post(f"{BASE}/patients/detect-headers", json={"job_id": job_id})
    assert detected.status_code == 200
    body = detected.json()
    assert body["delimiter"] == ";"
    assert body["row_count"] == 3
    assert {m["csv_header"]: m["suggested_field"] for m in body["suggested_mapping"]} == scenario_mapping
    assert body["patient_fields"][0]["key"] is None

    validated = await async_client.post(
        f"{BASE}/patients/validate", json={"job_id": job_id, "mapping": scenario_mapping}
    )
    assert validated.status_code == 200
    body = validated.json()
    assert body["status"] == "validated"
    stats = body["stats"]
    assert (stats["total"], stats["ok"], stats["warning"], stats["error"]) == (3, 1, 1, 1)
    assert stats["ok"] + stats["warning"] + stats["error"] == stats["total"]
    assert [sample["row"] for sample in body["samples"]["errors"]] == [2]
    assert body["samples"]["errors"][0]["errors"][0]["field"] == "birth_date"
    assert body["samples"]["warnings"][0]["data"]["email"] is None
    assert body["samples"]["ok"][0]["data"]["birth_date"] == "1985-03-05"

    run = await async_client.post(f"{BASE}/patients/run", json={"job_id": job_id})
    assert run.status_code == 200
    body = run.json()
    assert body["status"] == "completed"
    assert (body["stats"]["to_create"], body["stats"]["to_update"], body["stats"]["error"]) == (2, 0, 1)

    progress = await async_client.get(f"{BASE}/{job_id}/progress")
    assert progress.json()["processed_rows"] == progress.json()["total_rows"] == 3
    assert progress.json()["status"] == "completed"

    job = await async_client.get(f"{BASE}/{job_id}")
    assert job.status_code == 200
    assert job.json()["progress_percentage"] == 100
    assert job.json()["column_mapping"] == scenario_mapping


@pytest.mark.asyncio
async def test_revalidation_is_idempotent(async_client: AsyncClient, scenario_csv, scenario_mapping):
    job_id = (await upload(async_client, scenario_csv))["job_id"]
    payload = {"job_id": job_id, "mapping": scenario_mapping}

    first = await async_client.post(f"{BASE}/patients/validate", json=payload)
    first_rows = (await async_client.get(f"{BASE}/{job_id}/rows")).json()
    second = await async_client.post(f"{BASE}/patients/validate", json=payload)
    second_rows = (await async_client.get(f"{BASE}/{job_id}/rows")).json()

    assert first.json()["stats"] == second.json()["stats"]
    assert first_rows == second_rows
    assert len(second_rows) == 3


@pytest.mark.asyncio
async def test_revalidation_with_another_mapping_replaces_rows(async_client: AsyncClient, scenario_csv, scenario_mapping):
    job_id = (await upload(async_client, scenario_csv))["job_id"]
    await async_client.post(f"{BASE}/patients/validate", json={"job_id": job_id, "mapping": scenario_mapping})

    without_email = dict(scenario_mapping, Email=None)
    response = await async_client.post(f"{BASE}/patients/validate", json={"job_id": job_id, "mapping": without_email})

    stats = response.json()["stats"]
    assert (stats["ok"], stats["warning"], stats["error"]) == (2, 0, 1)
    warnings = (await async_client.get(f"{BASE}/{job_id}/rows", params={"status": "warning"})).json()
    assert warnings == []


@pytest.mark.asyncio
async def test_validation_rejects_bad_mapping(async_client: AsyncClient, scenario_csv):
    job_id = (await upload(async_client, scenario_csv))["job_id"]

    response = await async_client.post(
        f"{BASE}/patients/validate",
        json={"job_id": job_id, "mapping": {"Nom": "last_name", "Prénom": "last_name"}},
    )

    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"
    job = (await async_client.get(f"{BASE}/{job_id}")).json()
    assert job["status"] == "pending"


@pytest.mark.asyncio
async def test_reupload_points_to_previous_job(async_client: AsyncClient, scenario_csv):
    first = await upload(async_client, scenario_csv)
    second = await upload(async_client, scenario_csv, file_name="patients (1).csv")

    assert second["file_hash"] == first["file_hash"]
    assert second["previous_job_id"] == first["job_id"]


@pytest.mark.asyncio
async def test_empty_upload_is_rejected(async_client: AsyncClient):
    response = await async_client.post(f"{BASE}/patients/upload", json={"content": "  \n", "file_name": "vide.csv"})
    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_cancel_validated_job(async_client: AsyncClient, scenario_csv, scenario_mapping):
    job_id = (await upload(async_client, scenario_csv))["job_id"]
    await async_client.post(f"{BASE}/patients/validate", json={"job_id": job_id, "mapping": scenario_mapping})

    response = await async_client.post(f"{BASE}/{job_id}/cancel")
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["acknowledged"] is True

    job = (await async_client.get(f"{BASE}/{job_id}")).json()
    assert job["cancellation_reason"] == "user"

    run = await async_client.post(f"{BASE}/patients/run", json={"job_id": job_id})
    assert run.status_code == 409
    assert run.json()["code"] == "INVALID_JOB_STATE"

    again = await async_client.post(f"{BASE}/{job_id}/cancel")
    assert again.json()["acknowledged"] is False


@pytest.mark.asyncio
async def test_jobs_of_other_practices_are_not_found(async_client: AsyncClient, as_user, other_practice_user, scenario_csv):
    job_id = (await upload(async_client, scenario_csv))["job_id"]

    as_user(other_practice_user)

    assert (await async_client.get(f"{BASE}/{job_id}")).status_code == 404
    assert (await async_client.get(f"{BASE}/{job_id}/progress")).status_code == 404
    assert (await async_client.post(f"{BASE}/{job_id}/cancel")).status_code == 404
    assert (await async_client.post(f"{BASE}/patients/run", json={"job_id": job_id})).status_code == 404
    assert (await async_client.get(f"{BASE}/patients/last")).json() == {"last_import": None}


@pytest.mark.asyncio
async def test_last_import(async_client: AsyncClient, scenario_csv):
    assert (await async_client.get(f"{BASE}/patients/last")).json() == {"last_import": None}

    await upload(async_client, scenario_csv, file_name="janvier.csv")
    latest = await upload(async_client, scenario_csv + "Petit;Anne;01/01/2001;F;\n", file_name="fevrier.csv")

    last = (await async_client.get(f"{BASE}/patients/last")).json()["last_import"]
    assert last["id"] == latest["job_id"]
    assert last["file_name"] == "fevrier.csv"


@pytest.mark.asyncio
async def test_errors_export(async_client: AsyncClient, scenario_csv, scenario_mapping):
    job_id = (await upload(async_client, scenario_csv))["job_id"]
    await async_client.post(f"{BASE}/patients/validate", json={"job_id": job_id, "mapping": scenario_mapping})

    response = await async_client.get(f"{BASE}/{job_id}/errors")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "patients_errors.csv" in response.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(response.text), delimiter=";"))
    assert rows[0] == ["row", "Nom", "Prénom", "Date de naissance", "Sexe", "Email", "errors"]
    assert len(rows) == 2
    assert rows[1][:3] == ["2", "Martin", "Paul"]
    assert rows[1][-1].startswith("birth_date:")


@pytest.mark.asyncio
@pytest.mark.parametrize("variant,lines", [("empty", 1), ("example", 2)])
async def test_template_download(async_client: AsyncClient, variant, lines):
    response = await async_client.get(f"{BASE}/patients/template", params={"variant": variant})

    assert response.status_code == 200
    assert response.text.count("\n") == lines
    assert response.text.startswith("Numéro de dossier;")


@pytest.mark.asyncio
async def test_unknown_template_variant(async_client: AsyncClient):
    response = await async_client.get(f"{BASE}/patients/template", params={"variant": "full"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_bearer_token_resolves_practice(async_client: AsyncClient, scenario_csv):
    app.dependency_overrides.pop(dependencies.get_current_user, None)
    token = create_access_token({"sub": "user-practice-a", "tenant_id": "practice-a", "role": "assistant"})

    anonymous = await async_client.post(
        f"{BASE}/patients/upload", json={"content": scenario_csv, "file_name": "patients.csv"}
    )
    assert anonymous.status_code == 401
    assert anonymous.json()["code"] == "AUTHENTICATION_ERROR"

    invalid = await async_client.get(
        f"{BASE}/patients/last", headers={"Authorization": "Bearer not-a-token"}
    )
    assert invalid.status_code == 401
    assert invalid.json()["code"] == "AUTHENTICATION_ERROR"

    response = await async_client.post(
        f"{BASE}/patients/upload",
        json={"content": scenario_csv, "file_name": "patients.csv"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_openapi_declares_bearer_auth_without_token_route(async_client: AsyncClient):
    schema = (await async_client.get("/api/openapi.json")).json()

    schemes = schema["components"]["securitySchemes"]
    assert schemes["HTTPBearer"]["type"] == "http"
    assert schemes["HTTPBearer"]["scheme"] == "bearer"
    assert not any(path.endswith("/auth/token") for path in schema["paths"])
