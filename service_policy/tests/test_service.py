"""
Unit tests for the Policy service HTTP surface.
"""

import pytest
from fastapi.testclient import TestClient

from shared.config import get_config
from service_policy.app.main import PolicyService, create_app
from service_policy.app.enforcement.lifecycle import EnforcerLifecycle
from service_policy.app.enforcement.models import PolicyRule, RoleAssignment, Role
from service_policy.app.persistence.directory import InMemoryDirectory
from service_policy.app.persistence.store import InMemoryPolicyStore
from service_policy.app.provisioning.templates import ORGANIZATION_TEMPLATE, PROJECT_TEMPLATE
from service_policy.app.tokens.store import InMemoryTokenStore


def template_rows(template, domain):
    return [
        PolicyRule.of(subject, resource, action, domain).to_row()
        for subject, grants in template.items()
        for resource, action in grants
    ]


def as_user(principal_id):
    return {"X-Principal-Id": principal_id}


class TestPolicyService:
    """Test cases for PolicyService."""

    @pytest.fixture
    def directory(self):
        directory = InMemoryDirectory()
        directory.add_user("user-1", "principal-1", "owner@example.com")
        directory.add_user("user-2", "principal-2", "member@example.com")
        directory.add_user("user-3", "principal-3", "outsider@example.com")
        directory.add_organization("org-1", "Acme", "acme")
        directory.add_organization("org-2", "Globex", "globex")
        directory.add_membership("user-1", "org-1", Role.OWNER)
        directory.add_membership("user-2", "org-1", Role.MEMBER)
        directory.add_membership("user-3", "org-2", Role.OWNER)
        directory.add_project("proj-1", "org-1", "Loyalty", "loyalty")
        return directory

    @pytest.fixture
    def store(self):
        rows = template_rows(ORGANIZATION_TEMPLATE, "org-1") + template_rows(PROJECT_TEMPLATE, "proj-1")
        for domain in ("org-1", "proj-1"):
            rows.append(RoleAssignment.of("user-1", Role.OWNER, domain).to_row())
            rows.append(RoleAssignment.of("user-2", Role.MEMBER, domain).to_row())
        return InMemoryPolicyStore(rows)

    @pytest.fixture
    def service(self, directory, store):
        config = get_config("policy", 8013, store_backend="memory", trust_principal_header=True)
        return PolicyService(
            config=config,
            lifecycle=EnforcerLifecycle(lambda: store),
            directory=directory,
            token_store=InMemoryTokenStore()
        )

    @pytest.fixture
    def client(self, service):
        return TestClient(service.app)

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["service"] == "policy"

    def test_health_endpoint(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["dependencies"]["enforcer"] == "uninitialized"

    def test_metrics_endpoint(self, client):
        client.get("/")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_request_id_is_echoed(self, client):
        response = client.get("/", headers={"X-Request-Id": "req-123"})

        assert response.headers["X-Request-Id"] == "req-123"

    def test_create_app(self, directory, store):
        app = create_app(
            config=get_config("policy", 8013, store_backend="memory"),
            lifecycle=EnforcerLifecycle(lambda: store),
            directory=directory,
            token_store=InMemoryTokenStore()
        )

        assert TestClient(app).get("/").status_code == 200

    def test_user_context_requires_user(self, client):
        assert client.get("/user/context").status_code == 401
        assert client.get("/user/context", headers=as_user("principal-unknown")).status_code == 401

    def test_user_context(self, client):
        response = client.get("/user/context", headers=as_user("principal-1"))

        assert response.status_code == 200
        data = response.json()
        assert data["user"]["id"] == "user-1"
        assert data["organization"]["id"] == "org-1"
        assert data["organization"]["user_role"] == "OWNER"
        assert data["project"]["id"] == "proj-1"

    def test_switch_organization(self, client):
        assert client.post("/user/context", json={"organization_id": "org-1"}).status_code == 401
        assert client.post(
            "/user/context", json={"organization_id": "org-1"}, headers=as_user("principal-unknown")
        ).status_code == 404
        assert client.post(
            "/user/context", json={"organization_id": "org-2"}, headers=as_user("principal-1")
        ).status_code == 403

        response = client.post("/user/context", json={"organization_id": "org-2"}, headers=as_user("principal-3"))
        assert response.status_code == 200
        assert response.json()["organization"]["id"] == "org-2"
        assert response.json()["project"] is None

    def test_policy_check_for_self(self, client):
        response = client.post(
            "/policy/check",
            json={"resource": "campaign", "action": "delete", "domain": "proj-1"},
            headers=as_user("principal-2")
        )

        assert response.status_code == 200
        assert response.json()["allowed"] is False
        assert response.json()["subject"] == "user-2"

    def test_policy_check_for_other_subject(self, client):
        body = {"resource": "campaign", "action": "create", "domain": "proj-1", "subject": "user-2"}

        owner = client.post("/policy/check", json=body, headers=as_user("principal-1"))
        member = client.post("/policy/check", json={**body, "subject": "user-1"}, headers=as_user("principal-2"))

        assert owner.status_code == 200
        assert owner.json()["allowed"] is True
        assert member.status_code == 403

    def test_policy_reload_requires_global_manage(self, client):
        assert client.post("/policy/reload", headers=as_user("principal-1")).status_code == 403

    def test_store_edits_need_reload(self, client, store):
        """Test that rows written behind the enforcer's back stay invisible until reloaded."""
        body = {"resource": "billing", "action": "read", "domain": "proj-1"}
        assert client.post("/policy/check", json=body, headers=as_user("principal-2")).json()["allowed"] is False

        store.rows.append(PolicyRule.of(Role.MEMBER, "billing", "read", "proj-1").to_row())

        assert client.post("/policy/check", json=body, headers=as_user("principal-2")).json()["allowed"] is False

    def test_policy_reload(self, client, store):
        store.rows.append(PolicyRule.of("owner", "*", "*", "global").to_row())
        store.rows.append(RoleAssignment.of("user-1", "owner", "global").to_row())

        response = client.post("/policy/reload", headers=as_user("principal-1"))

        assert response.status_code == 200
        assert response.json()["status"] == "reloaded"
        assert "global" in response.json()["domains"]

    def test_list_project_policies(self, client):
        owner = client.get("/projects/proj-1/policies", headers=as_user("principal-1"))
        member = client.get("/projects/proj-1/policies", headers=as_user("principal-2"))

        assert owner.status_code == 200
        assert owner.json()["total"] == sum(len(grants) for grants in PROJECT_TEMPLATE.values())
        assert member.status_code == 403

    def test_provision_project(self, client, directory):
        directory.add_membership("user-3", "org-1", Role.VIEWER)

        response = client.post("/projects/proj-1/provision", headers=as_user("principal-1"))

        assert response.status_code == 200
        assert response.json()["assignments_added"] == 1
        assert client.post("/projects/proj-1/provision", headers=as_user("principal-2")).status_code == 403

    def test_provision_organization(self, client):
        response = client.post("/organizations/org-1/provision", headers=as_user("principal-1"))

        assert response.status_code == 200
        assert response.json()["projects_provisioned"] == 1
        assert client.post("/organizations/org-1/provision", headers=as_user("principal-2")).status_code == 403

    def test_token_lifecycle(self, client):
        """Test issuing, using, listing and revoking an API token."""
        created = client.post(
            "/projects/proj-1/auth-tokens",
            json={"scope": "read", "expires_in_days": 30},
            headers=as_user("principal-1")
        )
        assert created.status_code == 201
        token = created.json()
        assert token["token"].startswith("datk_")
        assert token["user_id"] == "user-1"

        bearer = {"Authorization": f"Bearer {token['token']}"}
        read = client.post("/projects/proj-1/auth-tokens/check", json={"resource": "campaign", "action": "read"}, headers=bearer)
        delete = client.post(
            "/projects/proj-1/auth-tokens/check", json={"resource": "campaign", "action": "delete"}, headers=bearer
        )
        assert read.json()["allowed"] is True
        assert delete.json()["allowed"] is False

        listed = client.get("/projects/proj-1/auth-tokens", headers=as_user("principal-2"))
        assert listed.status_code == 200
        assert listed.json()["total"] == 1
        assert listed.json()["tokens"][0]["token"] == f"{token['token'][:8]}...{token['token'][-4:]}"

        assert client.delete(f"/projects/proj-1/auth-tokens/{token['id']}", headers=as_user("principal-1")).status_code == 200
        assert client.delete(f"/projects/proj-1/auth-tokens/{token['id']}", headers=as_user("principal-1")).status_code == 404
        revoked = client.post(
            "/projects/proj-1/auth-tokens/check", json={"resource": "campaign", "action": "read"}, headers=bearer
        )
        assert revoked.json()["allowed"] is False

    def test_token_check_requires_bearer(self, client):
        response = client.post("/projects/proj-1/auth-tokens/check", json={"resource": "campaign", "action": "read"})

        assert response.status_code == 401

    def test_member_cannot_create_tokens(self, client):
        response = client.post("/projects/proj-1/auth-tokens", json={"scope": "admin"}, headers=as_user("principal-2"))

        assert response.status_code == 403

    def test_create_token_requires_one_binding(self, client):
        response = client.post(
            "/projects/proj-1/auth-tokens",
            json={"scope": "read", "policy_type": "api_readonly"},
            headers=as_user("principal-1")
        )

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_policy_type_then_token(self, client):
        created = client.post(
            "/projects/proj-1/auth-tokens/policy-types",
            json={"name": "exporter", "resources": ["customer"], "actions": ["read"]},
            headers=as_user("principal-1")
        )
        assert created.status_code == 201
        assert created.json()["policies_added"] == 1

        token = client.post(
            "/projects/proj-1/auth-tokens", json={"policy_type": "exporter"}, headers=as_user("principal-1")
        ).json()
        check = client.post(
            "/projects/proj-1/auth-tokens/check",
            json={"resource": "customer", "action": "read"},
            headers={"Authorization": f"Bearer {token['token']}"}
        )
        assert check.json()["allowed"] is True

    def test_store_failure_maps_to_service_unavailable(self, client, store):
        """Test that a failed policy write surfaces as 503, not 403."""

        async def broken_add_rule(row):
            raise ConnectionError("database down")

        store.add_rule = broken_add_rule
        response = client.post(
            "/projects/proj-1/auth-tokens/policy-types",
            json={"name": "exporter", "resources": ["customer"], "actions": ["read"]},
            headers=as_user("principal-1")
        )

        assert response.status_code == 503
        assert response.json()["code"] == "MUTATION_ERROR"
