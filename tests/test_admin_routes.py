"""Tests for admin verification, oversight and maintenance routes."""

from datetime import timedelta

from conftest import NOW


class TestStudentVerification:
    """Tests for /admin/students."""

    def test_pending_students_newest_first(self, client, marketplace, admin_headers):
        response = client.get("/admin/students/pending", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert [s["id"] for s in data["students"]] == [12, 11]
        assert data["students"][0]["email"] == "student12@quickjob.test"
        assert data["students"][0]["school_name"] == "VUB"

    def test_verified_students(self, client, marketplace, admin_headers):
        data = client.get("/admin/students/verified", headers=admin_headers).json()
        assert [s["id"] for s in data["students"]] == [10]
        assert data["students"][0]["phone"] == "+3247000010"

    def test_verified_limit(self, client, marketplace, admin_headers, db):
        db.tables["student_profiles"][1]["verification_status"] = "verified"
        data = client.get("/admin/students/verified", params={"limit": 1}, headers=admin_headers).json()
        assert [s["id"] for s in data["students"]] == [11]

    def test_verify_student(self, client, marketplace, admin_headers, db):
        response = client.patch("/admin/students/11/verify", json={"status": "verified"}, headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Student verified"
        assert data["student"]["verification_status"] == "verified"
        assert data["student"]["email"] == "student11@quickjob.test"
        assert db.row("student_profiles", 11)["verification_status"] == "verified"

        pending = client.get("/admin/students/pending", headers=admin_headers).json()
        assert [s["id"] for s in pending["students"]] == [12]

    def test_reject_student_keeps_applications(
        self, client, marketplace, make_job, make_application, admin_headers, db
    ):
        job = make_job()
        app = make_application(job["id"], 11)

        response = client.patch("/admin/students/11/verify", json={"status": "rejected"}, headers=admin_headers)

        assert response.status_code == 200
        assert db.row("job_applications", app["id"])["status"] == "pending"

    def test_unknown_status(self, client, marketplace, admin_headers):
        response = client.patch("/admin/students/11/verify", json={"status": "approved"}, headers=admin_headers)
        assert response.status_code == 400

    def test_unknown_student(self, client, marketplace, admin_headers):
        response = client.patch("/admin/students/404/verify", json={"status": "verified"}, headers=admin_headers)
        assert response.status_code == 404
        assert response.json() == {"error": "Student not found"}

    def test_admin_only(self, client, marketplace, make_headers):
        response = client.patch(
            "/admin/students/11/verify", json={"status": "verified"}, headers=make_headers(1, "client")
        )
        assert response.status_code == 403


class TestExpireJobs:
    """Tests for POST /admin/maintenance/expire-jobs."""

    def _seed(self, make_job, make_application):
        soon = (NOW + timedelta(minutes=20)).isoformat()
        unclaimed = make_job(title="Unclaimed", start_time=soon)
        wanted = make_job(title="Wanted", start_time=soon)
        make_application(wanted["id"], 10)
        later = make_job(title="Later", start_time=(NOW + timedelta(hours=3)).isoformat())
        planned = make_job(title="Planned", status="planned", start_time=soon)
        return unclaimed, wanted, later, planned

    def test_dry_run_changes_nothing(self, client, marketplace, make_job, make_application, admin_headers, db):
        unclaimed, *_ = self._seed(make_job, make_application)

        response = client.post(
            "/admin/maintenance/expire-jobs", json={"dry_run": True}, headers=admin_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["dry_run"] is True
        assert data["total_expired"] == 0
        assert [(a["job_id"], a["action"]) for a in data["actions"]] == [(unclaimed["id"], "would_expire")]
        assert db.row("jobs", unclaimed["id"])["status"] == "open"

    def test_expires_unclaimed_jobs(self, client, marketplace, make_job, make_application, admin_headers, db):
        unclaimed, wanted, later, planned = self._seed(make_job, make_application)

        data = client.post("/admin/maintenance/expire-jobs", json={}, headers=admin_headers).json()

        assert data["total_expired"] == 1
        assert data["window_minutes"] == 30
        assert db.row("jobs", unclaimed["id"])["status"] == "expired"
        assert db.row("jobs", wanted["id"])["status"] == "open"
        assert db.row("jobs", later["id"])["status"] == "open"
        assert db.row("jobs", planned["id"])["status"] == "planned"

    def test_wider_window(self, client, marketplace, make_job, make_application, admin_headers, db):
        unclaimed, wanted, later, planned = self._seed(make_job, make_application)

        data = client.post(
            "/admin/maintenance/expire-jobs", json={"window_minutes": 240}, headers=admin_headers
        ).json()

        assert sorted(a["job_id"] for a in data["actions"]) == sorted([unclaimed["id"], later["id"]])
        assert db.row("jobs", later["id"])["status"] == "expired"

    def test_admin_only(self, client, marketplace, make_headers):
        response = client.post("/admin/maintenance/expire-jobs", json={}, headers=make_headers(1, "client"))
        assert response.status_code == 403


class TestUserOversight:
    """Tests for /admin/users."""

    def test_users_newest_first_without_credentials(self, client, marketplace, admin_headers, db):
        db.row("users", 10)["password_hash"] = "$2b$12$hash"

        response = client.get("/admin/users", params={"role": "student"}, headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        assert [u["id"] for u in data["users"]] == [12, 11, 10]
        assert all("password_hash" not in u for u in data["users"])

    def test_all_roles(self, client, marketplace, admin_headers):
        data = client.get("/admin/users", headers=admin_headers).json()
        assert data["total"] == 5

    def test_unknown_role_filter(self, client, marketplace, admin_headers):
        response = client.get("/admin/users", params={"role": "superuser"}, headers=admin_headers)
        assert response.status_code == 400

    def test_student_with_profile(self, client, marketplace, admin_headers):
        data = client.get("/admin/users/11", headers=admin_headers).json()

        assert data["user"]["email"] == "student11@quickjob.test"
        assert data["user"]["role"] == "student"
        assert data["profile"]["school_name"] == "KU Leuven"

    def test_client_with_profile(self, client, marketplace, admin_headers, db):
        db.seed("client_profiles", {"id": 1, "company_name": "Tuinwerken BV"})

        data = client.get("/admin/users/1", headers=admin_headers).json()

        assert data["profile"]["company_name"] == "Tuinwerken BV"

    def test_user_without_profile(self, client, marketplace, admin_headers):
        data = client.get("/admin/users/2", headers=admin_headers).json()
        assert data["profile"] is None

    def test_unknown_user(self, client, marketplace, admin_headers):
        response = client.get("/admin/users/404", headers=admin_headers)
        assert response.status_code == 404
        assert response.json() == {"error": "User not found"}

    def test_admin_only(self, client, marketplace, make_headers):
        response = client.get("/admin/users", headers=make_headers(1, "client"))
        assert response.status_code == 403


class TestJobOversight:
    """Tests for /admin/jobs."""

    def _seed(self, make_job):
        old = make_job(title="Old", created_at="2025-04-01T10:00:00+00:00")
        new = make_job(title="New", client_id=2, created_at="2025-04-20T10:00:00+00:00")
        draft = make_job(title="Draft", status="draft", created_at="2025-04-10T10:00:00+00:00")
        return old, new, draft

    def test_jobs_newest_first_with_client(self, client, marketplace, make_job, admin_headers):
        old, new, draft = self._seed(make_job)

        data = client.get("/admin/jobs", headers=admin_headers).json()

        assert data["total"] == 3
        assert [j["id"] for j in data["jobs"]] == [new["id"], draft["id"], old["id"]]
        assert data["jobs"][0]["client"] == {"id": 2, "email": "client2@quickjob.test", "phone": None}
        assert data["jobs"][2]["category"]["key"] == "garden"

    def test_status_filter(self, client, marketplace, make_job, admin_headers):
        _, _, draft = self._seed(make_job)
        data = client.get("/admin/jobs", params={"status": "draft"}, headers=admin_headers).json()
        assert [j["id"] for j in data["jobs"]] == [draft["id"]]

    def test_job_detail(self, client, marketplace, make_job, admin_headers):
        old, _, _ = self._seed(make_job)

        data = client.get(f"/admin/jobs/{old['id']}", headers=admin_headers).json()

        assert data["job"]["title"] == "Old"
        assert data["job"]["client"]["email"] == "client1@quickjob.test"

    def test_unknown_job(self, client, marketplace, admin_headers):
        response = client.get("/admin/jobs/404", headers=admin_headers)
        assert response.status_code == 404
        assert response.json() == {"error": "Job not found"}

    def test_admin_status_change_uses_transition_table(self, client, marketplace, make_job, admin_headers, db):
        job = make_job()

        paid = client.patch(f"/jobs/{job['id']}/status", json={"status": "paid"}, headers=admin_headers)
        cancelled = client.patch(f"/jobs/{job['id']}/status", json={"status": "cancelled"}, headers=admin_headers)

        assert paid.status_code == 400
        assert cancelled.status_code == 200
        assert db.row("jobs", job["id"])["status"] == "cancelled"


class TestApplicationOversight:
    """Tests for /admin/applications."""

    def _seed(self, make_job, make_application):
        job = make_job()
        first = make_application(job["id"], 10, applied_at="2025-04-02T10:00:00+00:00")
        second = make_application(
            job["id"], 11, status="withdrawn", withdrawn_by="student", applied_at="2025-04-03T10:00:00+00:00"
        )
        return job, first, second

    def test_applications_most_recent_first(self, client, marketplace, make_job, make_application, admin_headers):
        job, first, second = self._seed(make_job, make_application)

        data = client.get("/admin/applications", headers=admin_headers).json()

        assert data["total"] == 2
        assert [a["id"] for a in data["applications"]] == [second["id"], first["id"]]
        latest = data["applications"][0]
        assert latest["withdrawn_by"] == "student"
        assert latest["student"]["email"] == "student11@quickjob.test"
        assert latest["job"] == {"id": job["id"], "title": "Mow lawn", "client_id": 1, "status": "open"}

    def test_status_filter(self, client, marketplace, make_job, make_application, admin_headers):
        _, first, _ = self._seed(make_job, make_application)
        data = client.get("/admin/applications", params={"status": "pending"}, headers=admin_headers).json()
        assert [a["id"] for a in data["applications"]] == [first["id"]]

    def test_application_detail(self, client, marketplace, make_job, make_application, admin_headers):
        _, first, _ = self._seed(make_job, make_application)

        data = client.get(f"/admin/applications/{first['id']}", headers=admin_headers).json()

        assert data["application"]["status"] == "pending"
        assert data["application"]["student"]["phone"] == "+3247000010"

    def test_unknown_application(self, client, marketplace, admin_headers):
        response = client.get("/admin/applications/404", headers=admin_headers)
        assert response.status_code == 404
        assert response.json() == {"error": "Application not found"}
