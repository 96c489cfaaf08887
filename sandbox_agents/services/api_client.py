"""API client service for interacting with the Sandbox Agents API."""

import os
import time
from typing import Any

import httpx

TERMINAL_STATUSES = ("completed", "failed", "cancelled")


class ApiClientService:
    """Service for Sandbox Agents API client operations."""

    @staticmethod
    def get_client(
        base_url: str | None = None, api_key: str | None = None
    ) -> httpx.Client:
        """Get configured HTTP client.

        Args:
            base_url: API base URL (defaults to SANDBOX_AGENTS_URL env var or http://localhost:8000)
            api_key: API key for authentication (defaults to API_SECRET_KEY env var)

        Returns:
            Configured httpx.Client with base_url, headers, and timeout
        """
        if base_url is None:
            base_url = os.getenv("SANDBOX_AGENTS_URL", "http://localhost:8000")
        if api_key is None:
            api_key = os.getenv("API_SECRET_KEY", "")

        return httpx.Client(
            base_url=base_url,
            headers={"X-API-Key": api_key},
            timeout=30.0,
        )

    @staticmethod
    def _request(
        method: str,
        path: str,
        client: httpx.Client | None = None,
        **kwargs,
    ) -> dict[str, Any]:
        should_close = client is None
        if client is None:
            client = ApiClientService.get_client()

        try:
            response = client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        finally:
            if should_close:
                client.close()

    @staticmethod
    def create_task(
        owner_id: str,
        instruction: str,
        repository_url: str,
        agent: str = "claude",
        keep_alive: bool = False,
        branch_name: str | None = None,
        client: httpx.Client | None = None,
    ) -> dict[str, Any]:
        """Create a new task.

        Raises:
            httpx.HTTPStatusError: If API request fails
        """
        payload: dict[str, Any] = {
            "owner_id": owner_id,
            "instruction": instruction,
            "repository_url": repository_url,
            "agent": agent,
            "keep_alive": keep_alive,
        }
        if branch_name is not None:
            payload["branch_name"] = branch_name

        return ApiClientService._request("POST", "/v1/tasks", client, json=payload)

    @staticmethod
    def continue_task(
        task_id: str, instruction: str, client: httpx.Client | None = None
    ) -> dict[str, Any]:
        """Queue a follow-up on a finished task. Returns the new task."""
        return ApiClientService._request(
            "POST",
            f"/v1/tasks/{task_id}/continue",
            client,
            json={"instruction": instruction},
        )

    @staticmethod
    def cancel_task(task_id: str, client: httpx.Client | None = None) -> dict[str, Any]:
        return ApiClientService._request("POST", f"/v1/tasks/{task_id}/cancel", client)

    @staticmethod
    def get_task(task_id: str, client: httpx.Client | None = None) -> dict[str, Any]:
        """Get task by ID.

        Raises:
            httpx.HTTPStatusError: If API request fails (e.g., 404 for not found)
        """
        return ApiClientService._request("GET", f"/v1/tasks/{task_id}", client)

    @staticmethod
    def list_tasks(
        limit: int = 10,
        owner_id: str | None = None,
        client: httpx.Client | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": limit}
        if owner_id is not None:
            params["owner_id"] = owner_id
        return ApiClientService._request("GET", "/v1/tasks", client, params=params)

    @staticmethod
    def get_messages(
        task_id: str,
        after_seq: int = 0,
        limit: int = 100,
        client: httpx.Client | None = None,
    ) -> dict[str, Any]:
        """Get a page of the task message stream after ``after_seq``."""
        return ApiClientService._request(
            "GET",
            f"/v1/tasks/{task_id}/messages",
            client,
            params={"after_seq": after_seq, "limit": limit},
        )

    @staticmethod
    def wait_for_task(
        task_id: str,
        timeout: int = 600,
        poll_interval: int = 5,
    ) -> dict[str, Any]:
        """Wait for task to reach a terminal status with polling.

        Args:
            task_id: Task ID to wait for
            timeout: Maximum time to wait in seconds (default: 600)
            poll_interval: Time between status checks in seconds (default: 5)

        Returns:
            Final task data when completed, failed or cancelled

        Raises:
            TimeoutError: If task doesn't complete within timeout period
            httpx.HTTPStatusError: If the API returns an error
        """
        start_time = time.time()

        while True:
            if time.time() - start_time > timeout:
                raise TimeoutError(f"Task {task_id} did not complete within {timeout}s")

            task = ApiClientService.get_task(task_id)
            if task["status"] in TERMINAL_STATUSES:
                return task

            time.sleep(poll_interval)
