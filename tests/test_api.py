import asyncio

import pytest
from fastapi.testclient import TestClient

from apps.api.main import app
from apps.api.routers import categorization as categorization_router
from apps.api.routers import expenses as expenses_router
from packages.common.schemas.expense import UNCATEGORIZED_NAME
from packages.domain.categorization import PredictionService, TrainingOrchestrator

from conftest import COFFEE

USER = "user-1"
HEADERS = {"X-User-Id": USER}


@pytest.fixture
def client(repository, model_store, recording_dispatcher, monkeypatch):
    service = PredictionService(model_store, repository)
    orchestrator = TrainingOrchestrator(repository, model_store, dispatcher=recording_dispatcher)

    monkeypatch.setattr(expenses_router, "expense_repository", repository)
    monkeypatch.setattr(expenses_router, "prediction_service", service)
    monkeypatch.setattr(expenses_router, "training_orchestrator", orchestrator)
    monkeypatch.setattr(categorization_router, "prediction_service", service)
    monkeypatch.setattr(categorization_router, "training_orchestrator", orchestrator)

    # No context manager: the lifespan (database engine) is not started
    return TestClient(app)


def test_missing_user_header_is_rejected(client):
    response = client.post("/api/v1/expenses", json={"amount": 5.25, "description": "Coffee shop"})
    assert response.status_code == 401


def test_root_is_public(client):
    assert client.get("/").status_code == 200


def test_expense_without_match_is_uncategorized(client, repository):
    response = client.post("/api/v1/expenses",
                           json={"amount": 5.25, "description": "Coffee shop"},
                           headers=HEADERS)
    assert response.status_code == 201
    body = response.json()
    assert repository.categories[USER][body["category_id"]] == UNCATEGORIZED_NAME
    assert body["ml_confidence"] == 0.0


def test_expense_is_auto_categorized_from_history(client, repository):
    repository.add(USER, "Coffee shop", 5.00, COFFEE)
    repository.categories.setdefault(USER, {})[COFFEE] = "Coffee"

    response = client.post("/api/v1/expenses",
                           json={"amount": 5.25, "description": "  Coffee shop "},
                           headers=HEADERS)
    assert response.status_code == 201
    body = response.json()
    assert body["category_id"] == COFFEE
    assert body["description"] == "Coffee shop"
    assert 0.0 < body["ml_confidence"] <= 1.0


def test_unknown_category_is_rejected(client):
    response = client.post("/api/v1/expenses",
                           json={"amount": 5.25, "description": "Coffee shop", "category_id": "nope"},
                           headers=HEADERS)
    assert response.status_code == 400


def test_invalid_payload_is_rejected(client):
    response = client.post("/api/v1/expenses",
                           json={"amount": 0, "description": ""},
                           headers=HEADERS)
    assert response.status_code == 422


def test_twentieth_categorized_expense_schedules_training(client, repository, recording_dispatcher):
    repository.seed(USER, 19)
    repository.categories.setdefault(USER, {})[COFFEE] = "Coffee"

    response = client.post("/api/v1/expenses",
                           json={"amount": 4.5, "description": "Latte", "category_id": COFFEE},
                           headers=HEADERS)
    assert response.status_code == 201
    assert recording_dispatcher.dispatched == [USER]


def test_uncategorized_expenses_do_not_schedule_training(client, repository, model_store,
                                                        recording_dispatcher, monkeypatch):
    repository.seed(USER, 40)
    monkeypatch.setattr(model_store, "exists", lambda user_id: True)

    for _ in range(3):
        response = client.post("/api/v1/expenses",
                               json={"amount": 777, "description": "zzqx"},
                               headers=HEADERS)
        assert response.status_code == 201

    assert asyncio.run(repository.count_categorized(USER)) == 40
    assert recording_dispatcher.dispatched == []


def test_explicit_uncategorized_category_does_not_schedule_training(client, repository, model_store,
                                                                    recording_dispatcher, monkeypatch):
    repository.seed(USER, 40)
    monkeypatch.setattr(model_store, "exists", lambda user_id: True)
    uncategorized_id = asyncio.run(repository.get_or_create_uncategorized(USER))

    response = client.post("/api/v1/expenses",
                           json={"amount": 12, "description": "Misc", "category_id": uncategorized_id},
                           headers=HEADERS)
    assert response.status_code == 201
    assert recording_dispatcher.dispatched == []


def test_list_expenses(client):
    for description in ("Coffee shop", "Uber ride"):
        client.post("/api/v1/expenses", json={"amount": 9.0, "description": description}, headers=HEADERS)

    response = client.get("/api/v1/expenses", headers=HEADERS)
    assert response.status_code == 200
    assert {row["description"] for row in response.json()} == {"Coffee shop", "Uber ride"}


def test_predict_endpoint(client, repository):
    repository.add(USER, "Coffee shop", 5.00, COFFEE)
    response = client.post("/api/v1/categorization/predict",
                           json={"description": "Coffee shop", "amount": 5.25},
                           headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["category_id"] == COFFEE
    assert response.json()["source"] == "similarity"


def test_manual_training_request(client, recording_dispatcher):
    response = client.post("/api/v1/categorization/models/train", headers=HEADERS)
    assert response.status_code == 202
    assert response.json() == {"user_id": USER, "queued": True}
    assert recording_dispatcher.dispatched == [USER]


def test_model_status_cold_start(client, repository):
    repository.seed(USER, 3)
    response = client.get("/api/v1/categorization/models/status", headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "no_model"
    assert body["model_available"] is False
    assert body["categorized_expenses"] == 3
