"""
任务 / 模型 / 系统 API 测试
"""
import time

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from conftest import make_scheduler
from core.scheduler import SimulatedExecutionSink

PREFIX = "/api/v1"


@pytest.fixture
def api_scheduler(probe, sink, registry):
    """不运行后台循环的调度器（任务保持排队状态）"""
    return make_scheduler(probe, sink, registry)


@pytest.fixture
def test_client(test_settings, api_scheduler):
    """测试客户端"""
    app = create_app(test_settings, scheduler=api_scheduler, run_background=False)
    with TestClient(app) as client:
        yield client


def submit(client, **body):
    body.setdefault("model", "llama-3-8b")
    return client.post(f"{PREFIX}/tasks", json=body)


class TestHealth:
    """健康检查测试"""

    def test_root_health(self, test_client):
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "healthy"

    def test_api_health(self, test_client):
        response = test_client.get(f"{PREFIX}/health")
        data = response.json()["data"]
        assert data["running_task"] is None
        assert "uptime_seconds" in data

    def test_request_id_header(self, test_client):
        response = test_client.get("/health", headers={"X-Request-ID": "req_fixed"})
        assert response.headers["X-Request-ID"] == "req_fixed"
        assert "X-Response-Time" in response.headers


class TestSubmitTask:
    """提交任务测试"""

    def test_submit_success(self, test_client):
        response = submit(test_client, task_id="t1", base_priority=2.0, category="chat")

        assert response.status_code == 202
        body = response.json()
        assert body["success"] is True
        assert body["data"]["task_id"] == "t1"
        assert body["data"]["state"] == "queued"
        assert body["data"]["position"] == 0
        assert body["data"]["estimated_wait_seconds"] == 0.0

    def test_submit_generates_id(self, test_client):
        response = submit(test_client)
        assert response.json()["data"]["task_id"].startswith("task_")

    def test_duplicate_id(self, test_client):
        submit(test_client, task_id="dup")
        response = submit(test_client, task_id="dup")

        assert response.status_code == 409
        assert response.json()["error"]["cause"] == "duplicate_task"

    def test_unknown_model(self, test_client):
        response = submit(test_client, model="gpt-unknown")

        assert response.status_code == 404
        assert response.json()["error"]["cause"] == "model_not_found"

    def test_self_dependency(self, test_client):
        response = submit(test_client, task_id="a", dependencies=["a"])
        assert response.status_code == 422

    def test_dependency_cycle(self, test_client):
        """前向依赖允许，闭合环被拒绝"""
        assert submit(test_client, task_id="a", dependencies=["b"]).status_code == 202
        response = submit(test_client, task_id="b", dependencies=["a"])

        assert response.status_code == 422
        assert response.json()["error"]["cause"] == "dependency_unresolved"

    def test_invalid_body(self, test_client):
        response = submit(test_client, quality_requirement=1.5)

        assert response.status_code == 422
        assert response.json()["error"]["field"] == "quality_requirement"

    def test_batch_submit(self, test_client):
        response = test_client.post(
            f"{PREFIX}/tasks/batch",
            json={"tasks": [
                {"task_id": "b1", "model": "sdxl"},
                {"task_id": "b2", "model": "missing-model"},
            ]},
        )

        assert response.status_code == 202
        data = response.json()["data"]
        assert data["submitted"] == 1
        assert data["failed"] == 1
        assert data["task_ids"] == ["b1"]
        assert data["errors"][0]["cause"] == "model_not_found"


class TestQueryTask:
    """查询任务测试"""

    def test_get_task(self, test_client):
        submit(test_client, task_id="t1", dependencies=["t0"])
        response = test_client.get(f"{PREFIX}/tasks/t1")

        assert response.status_code == 200
        assert response.json()["data"]["dependencies"] == ["t0"]

    def test_get_missing_task(self, test_client):
        response = test_client.get(f"{PREFIX}/tasks/nope")
        assert response.status_code == 404

    def test_list_tasks(self, test_client):
        submit(test_client, task_id="t1", category="chat")
        submit(test_client, task_id="t2", category="code", model="codellama-13b")

        response = test_client.get(f"{PREFIX}/tasks", params={"category": "code"})
        data = response.json()["data"]
        assert [item["task_id"] for item in data["items"]] == ["t2"]
        assert data["pagination"]["total_items"] == 1

        response = test_client.get(f"{PREFIX}/tasks", params={"page_size": 1})
        data = response.json()["data"]
        assert len(data["items"]) == 1
        assert data["pagination"]["total_pages"] == 2

    def test_list_by_state(self, test_client):
        submit(test_client, task_id="t1")
        response = test_client.get(f"{PREFIX}/tasks", params={"state": "completed"})
        assert response.json()["data"]["items"] == []

    def test_result_not_ready(self, test_client):
        submit(test_client, task_id="t1")
        response = test_client.get(f"{PREFIX}/tasks/t1/result")
        assert response.status_code == 400


class TestCancelTask:
    """取消任务测试"""

    def test_cancel_queued(self, test_client):
        submit(test_client, task_id="t1")
        response = test_client.post(f"{PREFIX}/tasks/t1/cancel")

        assert response.status_code == 200
        assert response.json()["message"] == "任务已取消"
        assert response.json()["data"]["state"] == "cancelled"
        assert response.json()["data"]["position"] is None

    def test_cancel_finished_task(self, test_client):
        submit(test_client, task_id="t1")
        test_client.post(f"{PREFIX}/tasks/t1/cancel")

        response = test_client.post(f"{PREFIX}/tasks/t1/cancel")
        assert response.status_code == 400

    def test_result_after_cancel(self, test_client):
        submit(test_client, task_id="t1")
        test_client.post(f"{PREFIX}/tasks/t1/cancel")

        response = test_client.get(f"{PREFIX}/tasks/t1/result")
        assert response.status_code == 200
        assert response.json()["data"]["state"] == "cancelled"


class TestFeedback:
    """反馈测试"""

    def test_submit_feedback(self, test_client):
        submit(test_client, task_id="t1", category="chat")
        response = test_client.post(f"{PREFIX}/tasks/t1/feedback", json={"rating": 5})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["category"] == "chat"
        assert data["source"] == "user"

    def test_invalid_rating(self, test_client):
        submit(test_client, task_id="t1")
        response = test_client.post(f"{PREFIX}/tasks/t1/feedback", json={"rating": 9})
        assert response.status_code == 422

    def test_feedback_for_missing_task(self, test_client):
        response = test_client.post(f"{PREFIX}/tasks/nope/feedback", json={"rating": 3})
        assert response.status_code == 404


class TestModelsAPI:
    """模型 API 测试"""

    def test_list_models(self, test_client):
        response = test_client.get(f"{PREFIX}/models")
        data = response.json()["data"]
        assert data["total"] == len(data["models"])
        assert "llama-3-8b" in data["families"]

    def test_filter_by_precision(self, test_client):
        response = test_client.get(f"{PREFIX}/models", params={"precision": "int4"})
        names = {m["name"] for m in response.json()["data"]["models"]}
        assert names == {"llama-3-8b-int4", "mistral-7b-int4"}

    def test_get_model(self, test_client):
        response = test_client.get(f"{PREFIX}/models/sdxl-turbo")
        assert response.json()["data"]["family"] == "sdxl"

    def test_get_unknown_model(self, test_client):
        response = test_client.get(f"{PREFIX}/models/unknown")
        assert response.status_code == 404

    def test_fallbacks(self, test_client):
        response = test_client.get(f"{PREFIX}/models/llama-3-8b/fallbacks")
        data = response.json()["data"]
        assert [m["name"] for m in data["fallbacks"]] == ["llama-3-8b-int8", "llama-3-8b-int4"]

    def test_summary(self, test_client):
        response = test_client.get(f"{PREFIX}/models/summary")
        assert response.json()["data"]["by_family"]["bge-large"] == 2


class TestSystemAPI:
    """系统 API 测试"""

    def test_resources(self, test_client):
        response = test_client.get(f"{PREFIX}/system/resources")
        data = response.json()["data"]
        assert data["mock_mode"] is True
        assert data["snapshot"]["memory_total_mb"] == 24000

    def test_forecast(self, test_client):
        response = test_client.get(f"{PREFIX}/system/resources/forecast", params={"horizon": 0})
        data = response.json()["data"]
        assert data["confidence"] == 1.0

    def test_queue_status(self, test_client):
        submit(test_client, task_id="low", base_priority=0.0)
        submit(test_client, task_id="high", base_priority=10.0)

        response = test_client.get(f"{PREFIX}/system/queue")
        data = response.json()["data"]
        assert data["size"] == 2
        assert data["running"] is None
        assert [t["task_id"] for t in data["tasks"]] == ["high", "low"]

    def test_config(self, test_client):
        data = test_client.get(f"{PREFIX}/system/config").json()["data"]
        assert data["queue_backend"] == "MemoryTaskQueue"
        assert "llama-3-8b" in data["supported_models"]

    def test_scheduler_stats(self, test_client):
        submit(test_client, task_id="t1")
        data = test_client.get(f"{PREFIX}/system/scheduler/stats").json()["data"]
        assert data["submitted"] == 1
        assert data["queue_size"] == 1

    def test_webhook_endpoints(self, test_client):
        assert test_client.get(f"{PREFIX}/system/webhooks/stats").status_code == 200
        response = test_client.get(f"{PREFIX}/system/webhooks/records", params={"task_id": "t1"})
        assert response.json()["data"] == []


class TestEndToEnd:
    """后台循环运行时的完整流程"""

    def test_task_completes(self, test_settings, probe, registry):
        scheduler = make_scheduler(probe, SimulatedExecutionSink(seconds_per_unit=0.0), registry)
        app = create_app(test_settings, scheduler=scheduler, run_background=True)

        with TestClient(app) as client:
            submit(client, task_id="e2e", resource_intensity=0.2)

            state = None
            for _ in range(100):
                state = client.get(f"{PREFIX}/tasks/e2e").json()["data"]["state"]
                if state == "completed":
                    break
                time.sleep(0.05)

            assert state == "completed"
            result = client.get(f"{PREFIX}/tasks/e2e/result").json()["data"]
            assert result["result"]["model_id"] == "llama-3-8b"
            assert result["duration_seconds"] is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
