"""
Tests for user management: admin listing, viewer creation, self-service and deletion rules.
"""


class TestListUsers:

    def test_admin_lists_everyone(self, client, auth, admin, alice, bob):
        response = client.get("/api/users", headers=auth(admin))
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 3
        assert body["page"] == 1
        assert body["totalPages"] == 1
        assert all("password_hash" not in u for u in body["data"])

    def test_regular_user_cannot_list(self, client, auth, alice):
        assert client.get("/api/users", headers=auth(alice)).status_code == 403

    def test_summary(self, client, auth, admin, alice, viewer):
        body = client.get("/api/users?summary=true", headers=auth(admin)).json()
        assert body["overview"]["total_users"] == 3
        assert body["by_role"] == {"regular": 1, "admin": 1, "viewer": 1}

    def test_search(self, client, auth, admin, alice, bob):
        body = client.get("/api/users?search=alice", headers=auth(admin)).json()
        assert [u["email"] for u in body["data"]] == ["alice@finance.io"]
        assert body["search_term"] == "alice"


class TestCreateUser:

    def test_regular_creates_own_viewer(self, client, auth, alice):
        response = client.post(
            "/api/users",
            json={"name": "Kid", "email": "kid@finance.io", "password": "secret123", "role": "viewer"},
            headers=auth(alice),
        )
        assert response.status_code == 201
        body = response.json()
        assert body["role"] == "viewer"
        assert body["delegate_of"] == alice.id
        assert body["created_by"] == {"id": alice.id, "role": "regular"}

    def test_regular_cannot_create_regular(self, client, auth, alice):
        response = client.post(
            "/api/users",
            json={"name": "X", "email": "x@finance.io", "password": "secret123", "role": "regular"},
            headers=auth(alice),
        )
        assert response.status_code == 403

    def test_regular_cannot_delegate_to_someone_else(self, client, auth, alice, bob):
        response = client.post(
            "/api/users",
            json={
                "name": "X",
                "email": "x@finance.io",
                "password": "secret123",
                "role": "viewer",
                "delegate_of": bob.id,
            },
            headers=auth(alice),
        )
        assert response.status_code == 403

    def test_admin_viewer_needs_a_real_delegate(self, client, auth, admin):
        response = client.post(
            "/api/users",
            json={"name": "X", "email": "x@finance.io", "password": "secret123", "role": "viewer", "delegate_of": 999},
            headers=auth(admin),
        )
        assert response.status_code == 400

    def test_viewer_cannot_delegate_to_viewer(self, client, auth, admin, viewer):
        response = client.post(
            "/api/users",
            json={
                "name": "X",
                "email": "x@finance.io",
                "password": "secret123",
                "role": "viewer",
                "delegate_of": viewer.id,
            },
            headers=auth(admin),
        )
        assert response.status_code == 400

    def test_viewer_cannot_create_users(self, client, auth, viewer):
        response = client.post(
            "/api/users",
            json={"name": "X", "email": "x@finance.io", "password": "secret123", "role": "viewer"},
            headers=auth(viewer),
        )
        assert response.status_code == 403

    def test_duplicate_email(self, client, auth, admin, alice):
        response = client.post(
            "/api/users",
            json={"name": "A", "email": "alice@finance.io", "password": "secret123"},
            headers=auth(admin),
        )
        assert response.status_code == 400


class TestProfile:

    def test_me_alias(self, client, auth, alice):
        assert client.get("/api/users/me", headers=auth(alice)).json()["id"] == alice.id

    def test_other_profile_is_not_found(self, client, auth, alice, bob):
        assert client.get(f"/api/users/{bob.id}", headers=auth(alice)).status_code == 404

    def test_viewer_reads_delegate_profile(self, client, auth, alice, viewer):
        assert client.get(f"/api/users/{alice.id}", headers=auth(viewer)).status_code == 200

    def test_update_self(self, client, auth, alice):
        response = client.put("/api/users/me", json={"name": "Alice Liddell"}, headers=auth(alice))
        assert response.status_code == 200
        assert response.json()["name"] == "Alice Liddell"

    def test_non_admin_cannot_promote_self(self, client, auth, alice):
        response = client.put("/api/users/me", json={"role": "admin"}, headers=auth(alice))
        assert response.status_code == 200
        assert response.json()["role"] == "regular"

    def test_update_other_is_forbidden(self, client, auth, alice, bob):
        assert client.put(f"/api/users/{bob.id}", json={"name": "B"}, headers=auth(alice)).status_code == 403

    def test_viewer_updates_own_profile(self, client, auth, viewer):
        response = client.put("/api/users/me", json={"name": "Valerie"}, headers=auth(viewer))
        assert response.status_code == 200

    def test_admin_changes_role(self, client, auth, admin, bob):
        response = client.put(f"/api/users/{bob.id}", json={"role": "admin"}, headers=auth(admin))
        assert response.json()["role"] == "admin"


class TestDeleteUser:

    def test_delete_self_without_data(self, client, auth, bob):
        assert client.delete("/api/users/me", headers=auth(bob)).status_code == 204

    def test_viewer_deletes_self(self, client, auth, viewer):
        assert client.delete("/api/users/me", headers=auth(viewer)).status_code == 204

    def test_delete_with_data_is_blocked(self, client, auth, admin, alice, create):
        create(alice, "categories", name="Food")
        response = client.delete(f"/api/users/{alice.id}", headers=auth(admin))
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Cannot delete user with existing data"
        assert body["details"] == "categories: 1"
        assert client.get(f"/api/users/{alice.id}", headers=auth(admin)).status_code == 200

    def test_delete_other_is_forbidden(self, client, auth, alice, bob):
        assert client.delete(f"/api/users/{bob.id}", headers=auth(alice)).status_code == 403


class TestActivation:

    def test_deactivate_and_activate(self, client, auth, admin, bob):
        response = client.post(f"/api/users/{bob.id}/deactivate", headers=auth(admin))
        assert response.status_code == 200
        assert response.json()["active"] is False
        assert client.post(f"/api/users/{bob.id}/deactivate", headers=auth(admin)).status_code == 400
        assert client.post(f"/api/users/{bob.id}/activate", headers=auth(admin)).json()["active"] is True

    def test_admin_cannot_deactivate_self(self, client, auth, admin):
        assert client.post("/api/users/me/deactivate", headers=auth(admin)).status_code == 400

    def test_regular_cannot_deactivate(self, client, auth, alice, bob):
        assert client.post(f"/api/users/{bob.id}/deactivate", headers=auth(alice)).status_code == 403


class TestStats:

    def test_own_stats(self, client, auth, alice, create):
        category = create(alice, "categories", name="Salary")
        create(alice, "transactions", amount=1000, type="income", description="Pay", category_id=category["id"])
        create(alice, "transactions", amount=250, type="expense", description="Rent", category_id=category["id"])

        body = client.get("/api/users/me/stats", headers=auth(alice)).json()
        assert body["financial"]["total_income"] == 1000
        assert body["financial"]["total_expenses"] == 250
        assert body["financial"]["net_balance"] == 750
        assert body["organization"]["total_categories"] == 1
        assert "viewer_context" not in body

    def test_viewer_sees_delegate_stats(self, client, auth, alice, viewer):
        body = client.get("/api/users/me/stats", headers=auth(viewer)).json()
        assert body["user"]["id"] == alice.id
        assert body["viewer_context"]["viewer_id"] == viewer.id

    def test_viewer_cannot_see_other_stats(self, client, auth, viewer, bob):
        assert client.get(f"/api/users/{bob.id}/stats", headers=auth(viewer)).status_code == 403
