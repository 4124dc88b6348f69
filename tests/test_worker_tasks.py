from types import SimpleNamespace

from apps.api import tasks as api_tasks
from services.worker import celery_app  # noqa: F401
from services.worker.tasks import train_model as train_model_task

USER = "user-1"


def test_train_task_reports_published_generation(monkeypatch):
    async def fake_train(user_id):
        return True

    monkeypatch.setattr(train_model_task, "_train", fake_train)
    monkeypatch.setattr(
        train_model_task.training_orchestrator.model_store,
        "read_manifest",
        lambda user_id: SimpleNamespace(generation="20260301T101500000000-abcdef01"),
    )

    result = train_model_task.train_user_model_task(USER)

    assert result == {
        "user_id": USER,
        "trained": True,
        "generation": "20260301T101500000000-abcdef01",
    }


def test_train_task_without_training(monkeypatch):
    async def fake_train(user_id):
        return False

    monkeypatch.setattr(train_model_task, "_train", fake_train)

    result = train_model_task.train_user_model_task(USER)
    assert result["trained"] is False
    assert result["generation"] is None


def test_celery_dispatcher_sends_task_by_name(monkeypatch):
    sent = []

    def fake_send_task(name, args=None, queue=None):
        sent.append((name, args, queue))
        return SimpleNamespace(id="task-1")

    monkeypatch.setattr(api_tasks.celery_app, "send_task", fake_send_task)

    assert api_tasks.CeleryTrainingDispatcher().dispatch(USER)
    assert sent == [(api_tasks.TRAIN_MODEL_TASK, [USER], "training")]
