from fastapi.testclient import TestClient


def _generate(client, headers, **body):
    body.setdefault("model", "google/nano-banana")
    body.setdefault("prompt", "a lighthouse")
    return client.post("/generate", json=body, headers=headers)


def test_health(client: TestClient):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True
    assert response.json()["service"] == "genbilling-api"


def test_models_listing(client: TestClient):
    response = client.get("/models")
    assert response.status_code == 200
    items = {item["id"]: item for item in response.json()["items"]}

    seedance = items["bytedance/seedance-1.5-pro"]
    assert seedance["type"] == "video"
    assert seedance["inputs"]["max"] == 2
    assert seedance["defaults"]["generate_audio"] is False
    kinds = {param["key"]: param["kind"] for param in seedance["params"]}
    assert kinds["resolution"] == "select"
    assert kinds["generate_audio"] == "boolean"
    assert items["google/nano-banana"]["max_units"] == 6


def test_generate_success(client: TestClient, sign_in, set_account_balances, executor):
    headers, user = sign_in(9001)
    set_account_balances(9001, 100, promo=1)

    response = _generate(client, headers, counter=2, params={"output_format": "jpeg"})

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["job"]["status"] == "succeeded"
    assert body["job"]["output_url"] == "https://cdn.test/out.png"
    assert body["job"]["cost"] == 7
    assert body["job"]["promo_credits_consumed"] == 1
    assert body["user"] == {"balance": 93, "promo_gen": 0}
    assert executor.calls[0].telegram_id == 9001


def test_generate_failure_reports_refunded_balances(client: TestClient, sign_in, set_account_balances, executor):
    headers, _ = sign_in(9002)
    set_account_balances(9002, 50)
    executor.fail("render_failed", "Crash in /app/worker/render.py")

    response = _generate(client, headers)

    assert response.status_code == 500
    body = response.json()
    assert body["job"]["status"] == "failed"
    assert body["error"]["code"] == "render_failed"
    assert "/app/worker" not in body["error"]["message"]
    assert body["user"] == {"balance": 50, "promo_gen": 0}

    job = client.get(f"/jobs/{body['job']['id']}", headers=headers).json()["job"]
    assert job["status"] == "failed"
    assert job["error"]["code"] == "render_failed"


def test_generate_insufficient_balance(client: TestClient, sign_in, executor):
    headers, _ = sign_in(9003)

    response = _generate(client, headers)

    assert response.status_code == 402
    assert response.json()["error"]["code"] == "insufficient_balance"
    assert executor.calls == []
    assert client.get("/jobs", headers=headers).json()["items"] == []


def test_generate_validation_errors(client: TestClient, sign_in, set_account_balances):
    headers, _ = sign_in(9004)
    set_account_balances(9004, 100)

    unknown = _generate(client, headers, model="nope")
    assert unknown.status_code == 400
    assert unknown.json()["error"]["code"] == "unknown_model"

    bad_param = _generate(client, headers, params={"output_format": "bmp"})
    assert bad_param.json()["error"]["code"] == "invalid_params"

    no_prompt = _generate(client, headers, prompt="  ")
    assert no_prompt.json()["error"]["code"] == "invalid_body"

    body_error = _generate(client, headers, counter=99)
    assert body_error.status_code == 400
    assert body_error.json()["error"]["code"] == "invalid_body"


def test_generate_rejects_foreign_input_paths(client: TestClient, sign_in, set_account_balances, executor, stager):
    headers, user = sign_in(9005)
    set_account_balances(9005, 100)

    for path in ("someone-else/a.png", f"{user['id']}/../x/a.png", f"{user['id']}x/a.png"):
        response = _generate(
            client,
            headers,
            model="nano-banana-pro",
            inputs=[{"kind": "image", "path": path}],
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_inputs"

    assert executor.calls == []
    assert stager.read_requests == []


def test_generate_with_owned_inputs(client: TestClient, sign_in, set_account_balances, executor):
    headers, user = sign_in(9006)
    set_account_balances(9006, 100)
    path = f"{user['id']}/ref.png"

    response = _generate(client, headers, model="nano-banana-pro", inputs=[{"kind": "image", "path": path}])

    assert response.status_code == 200, response.text
    assert response.json()["job"]["inputs"] == [{"kind": "image", "path": path}]
    assert executor.calls[0].inputs[0].signed_url.startswith("https://storage.test/read/")


def test_generate_requires_auth(client: TestClient):
    response = _generate(client, {})
    assert response.status_code == 401


def test_jobs_are_private(client: TestClient, sign_in, set_account_balances):
    owner_headers, _ = sign_in(9101)
    other_headers, _ = sign_in(9102)
    set_account_balances(9101, 100)

    job_id = _generate(client, owner_headers).json()["job"]["id"]

    assert client.get(f"/jobs/{job_id}", headers=owner_headers).status_code == 200
    hidden = client.get(f"/jobs/{job_id}", headers=other_headers)
    assert hidden.status_code == 404
    assert hidden.json()["error"]["code"] == "not_found"
    assert client.get("/jobs", headers=other_headers).json()["items"] == []

    listed = client.get("/jobs", headers=owner_headers).json()["items"]
    assert [item["id"] for item in listed] == [job_id]


def test_signed_uploads(client: TestClient, sign_in):
    headers, user = sign_in(9201)
    response = client.post(
        "/uploads/create-signed",
        json={"files": [{"filename": "../../etc/passwd.png", "contentType": "image/png", "sizeBytes": 1024}]},
        headers=headers,
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["bucket"] == "test-bucket"
    path = body["items"][0]["path"]
    assert path.startswith(f"{user['id']}/")
    assert path.endswith(".png")
    assert ".." not in path
    assert body["items"][0]["upload_url"].startswith("https://storage.test/upload/")


def test_signed_upload_limits(client: TestClient, sign_in):
    headers, _ = sign_in(9202)
    too_big = client.post(
        "/uploads/create-signed",
        json={"files": [{"filename": "a.png", "contentType": "image/png", "sizeBytes": 10**10}]},
        headers=headers,
    )
    assert too_big.status_code == 400
    assert too_big.json()["error"]["code"] == "file_too_large"

    files = [{"filename": f"{i}.png", "contentType": "image/png", "sizeBytes": 10} for i in range(9)]
    too_many = client.post("/uploads/create-signed", json={"files": files}, headers=headers)
    assert too_many.status_code == 400

    empty = client.post("/uploads/create-signed", json={"files": []}, headers=headers)
    assert empty.status_code == 400
