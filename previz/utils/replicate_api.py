import time
from typing import Any, Dict, Optional

import requests

TERMINAL_PREDICTION_STATUSES = ("succeeded", "failed", "canceled")


def first_output_url(output: Any) -> Optional[str]:
    if isinstance(output, str):
        return output or None
    if isinstance(output, list):
        for item in output:
            if isinstance(item, str) and item:
                return item
    if isinstance(output, dict):
        return output.get("url") or output.get("image")
    return None


class ReplicateClient:
    """Thin wrapper over the Replicate HTTP API (predictions, trainings, account)."""

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.replicate.com/v1",
        timeout_sec: int = 60,
        wait_sec: int = 60,
    ):
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self.wait_sec = wait_sec

    def _headers(self, json_body: bool = False) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.api_token}"}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def account(self) -> Dict[str, Any]:
        resp = requests.get(f"{self.base_url}/account", headers=self._headers(), timeout=self.timeout_sec)
        if resp.status_code != 200:
            raise RuntimeError(f"Account lookup failed: {resp.status_code} {resp.text}")
        return resp.json()

    def create_prediction(self, model: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Start a prediction. `model` is either "owner/name" (official or trained
        model, latest version) or "owner/name:version".
        """
        headers = self._headers(json_body=True)
        if self.wait_sec:
            headers["Prefer"] = f"wait={self.wait_sec}"
        if ":" in model:
            version = model.split(":", 1)[1]
            url = f"{self.base_url}/predictions"
            body = {"version": version, "input": payload}
        else:
            url = f"{self.base_url}/models/{model}/predictions"
            body = {"input": payload}
        resp = requests.post(url, headers=headers, json=body, timeout=self.timeout_sec + (self.wait_sec or 0))
        if resp.status_code not in (200, 201):
            raise RuntimeError(f"Submit failed: {resp.status_code} {resp.text}")
        return resp.json()

    def get_prediction(self, prediction_id: str, result_url_hint: Optional[str] = None) -> Dict[str, Any]:
        url = result_url_hint or f"{self.base_url}/predictions/{prediction_id}"
        resp = requests.get(url, headers=self._headers(), timeout=self.timeout_sec)
        if resp.status_code != 200:
            raise RuntimeError(f"Poll failed: {resp.status_code} {resp.text}")
        return resp.json()

    def poll_prediction(
        self,
        prediction: Dict[str, Any],
        timeout_sec: int = 300,
        poll_interval_sec: int = 2,
    ) -> Dict[str, Any]:
        deadline = time.time() + timeout_sec
        hint = (prediction.get("urls") or {}).get("get")
        while prediction.get("status") not in TERMINAL_PREDICTION_STATUSES:
            if time.time() >= deadline:
                raise TimeoutError(f"Timed out waiting for prediction {prediction.get('id')}")
            time.sleep(poll_interval_sec)
            prediction = self.get_prediction(prediction["id"], result_url_hint=hint)
        if prediction["status"] != "succeeded":
            raise RuntimeError(f"Prediction {prediction['status']}: {prediction.get('error')}")
        return prediction

    def create_training(
        self,
        owner: str,
        name: str,
        version: str,
        destination: str,
        payload: Dict[str, Any],
        webhook: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/models/{owner}/{name}/versions/{version}/trainings"
        body: Dict[str, Any] = {"destination": destination, "input": payload}
        if webhook:
            body["webhook"] = webhook
            body["webhook_events_filter"] = ["completed"]
        resp = requests.post(url, headers=self._headers(json_body=True), json=body, timeout=self.timeout_sec)
        if resp.status_code not in (200, 201):
            raise RuntimeError(f"Training submit failed: {resp.status_code} {resp.text}")
        return resp.json()

    def get_training(self, training_id: str) -> Dict[str, Any]:
        resp = requests.get(f"{self.base_url}/trainings/{training_id}", headers=self._headers(), timeout=self.timeout_sec)
        if resp.status_code != 200:
            raise RuntimeError(f"Training lookup failed: {resp.status_code} {resp.text}")
        return resp.json()
