"""
Tests for the single-image upscale endpoint.
"""
import base64

from conftest import TEST_USER_ID


def data_url(data: bytes, content_type="image/png") -> str:
    return f"data:{content_type};base64,{base64.b64encode(data).decode()}"


class TestUpscale:

    def test_upscale_charges_estimate(self, client, auth_headers, make_png, ledger):
        response = client.post(
            "/api/upscale",
            json={"image": data_url(make_png()), "scale": 2, "filename": "a.png"},
            headers=auth_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["image"].startswith("data:image/png;base64,")
        assert data["credits_used"] == 1
        assert data["balance"] == 99
        assert ledger.transactions(TEST_USER_ID)[0].amount == -1

    def test_bare_base64_accepted(self, client, auth_headers, make_png):
        response = client.post(
            "/api/upscale",
            json={"image": base64.b64encode(make_png()).decode(), "scale": 4},
            headers=auth_headers,
        )
        assert response.status_code == 200

    def test_invalid_base64(self, client, auth_headers):
        response = client.post(
            "/api/upscale",
            json={"image": "data:image/png;base64,@@@", "scale": 2},
            headers=auth_headers,
        )
        assert response.status_code == 400

    def test_unsupported_type(self, client, auth_headers):
        response = client.post(
            "/api/upscale",
            json={"image": data_url(b"GIF89a", "image/gif"), "scale": 2},
            headers=auth_headers,
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_INPUT"

    def test_insufficient_credits(self, client, auth_headers, make_png, ledger):
        client.get("/api/credits", headers=auth_headers)
        ledger.debit(TEST_USER_ID, 100, "drain")
        response = client.post(
            "/api/upscale",
            json={"image": data_url(make_png()), "scale": 2},
            headers=auth_headers,
        )
        assert response.status_code == 402

    def test_remote_failure_not_charged(self, client, auth_headers, make_png, ledger):
        response = client.post(
            "/api/upscale",
            json={"image": data_url(make_png()), "scale": 2, "filename": "fail.png"},
            headers=auth_headers,
        )
        assert response.status_code == 429
        assert response.json()["error_code"] == "RATE_LIMITED"
        assert ledger.balance(TEST_USER_ID) == 100
