from __future__ import annotations

import asyncio
from typing import Any

import pytest

from cookhound.errors import InfrastructureError, InfrastructureErrorCode
from cookhound.integrations import EmailMessage, InMemoryVisitCounter
from cookhound.jobs import JobDeps, JobNames, QueueNames, build_jobs, load_jobs
from cookhound.jobs.cron import CRON_JOBS, schedule_recurring_jobs
from cookhound.jobs.email_templates import render
from cookhound.jobs.emails import SendContactFormJob, SendPasswordResetEmailJob, SendVerificationEmailJob
from cookhound.jobs.recipes import RegisterRecipeVisitJob
from cookhound.jobs.search import ReindexRecipesJob
from cookhound.queue.base_job import CronJobConfig
from cookhound.queue.interfaces import Job
from cookhound.queue.manager import QueueManager
from cookhound.services.recipe_visits import register_recipe_visit
from tests._helpers.queue import local_connection, wait_until


class _Mailer:
    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []

    async def send(self, message: EmailMessage) -> None:
        self.sent.append(message)


class _Recipes:
    def __init__(self, n: int) -> None:
        self.docs = [{"id": i, "title": f"recipe {i}"} for i in range(1, n + 1)]
        self.calls: list[tuple[int, int]] = []

    async def list_after(self, last_id: int, limit: int) -> list[dict[str, Any]]:
        self.calls.append((last_id, limit))
        return [d for d in self.docs if d["id"] > last_id][:limit]


class _Index:
    def __init__(self, broken: set[int] | None = None) -> None:
        self.docs: dict[int, dict[str, Any]] = {}
        self.broken = broken or set()

    async def upsert(self, document: dict[str, Any]) -> None:
        if document["id"] in self.broken:
            raise RuntimeError("mapping conflict")
        self.docs[document["id"]] = document


def _job(name: str, data: Any, queue: str = "emails") -> Job:
    return Job(id="1", name=name, queue_name=queue, data=data)


def test_catalogue_registers_every_job_on_its_queue() -> None:
    jobs = build_jobs(JobDeps())
    assert [j.definition().name for j in jobs] == [
        JobNames.SEND_VERIFICATION_EMAIL,
        JobNames.SEND_PASSWORD_RESET_EMAIL,
        JobNames.SEND_CONTACT_FORM,
        JobNames.REGISTER_RECIPE_VISIT,
        JobNames.REINDEX_RECIPES,
    ]
    qm = QueueManager(connection_factory=local_connection, job_loader=load_jobs)

    async def main() -> None:
        await qm.initialize(False)
        assert sorted(qm.get_queue_names()) == sorted([QueueNames.EMAILS, QueueNames.RECIPES, QueueNames.SEARCH])
        job = await qm.add_job(JobNames.SEND_CONTACT_FORM, {"name": "Ann"})
        assert job.opts["attempts"] == 3
        assert job.opts["backoff"] == {"type": "exponential", "delay": 5000}
        await qm.shutdown()

    asyncio.run(main())


def test_verification_email_link_and_locale() -> None:
    mailer = _Mailer()
    job = SendVerificationEmailJob(mailer)
    data = {"token": "t/ok+1", "to": {"address": "ann@example.com", "name": "Ann <3"}, "locale": "en"}
    asyncio.run(job.handle(_job(JobNames.SEND_VERIFICATION_EMAIL, data)))

    (msg,) = mailer.sent
    assert msg.to.address == "ann@example.com"
    assert msg.subject == "Verify your email address"
    assert msg.sender.address == "noreply@cookhound.local"
    assert (
        "http://localhost:3000/auth/callback/verify-email?token=t%2Fok%2B1&amp;email=ann%40example.com" in msg.html
    )
    assert "Ann &lt;3" in msg.html


def test_password_reset_email_defaults_to_czech() -> None:
    mailer = _Mailer()
    data = {"token": "abc", "to": {"address": "jan@example.com", "name": "Jan"}, "locale": "de"}
    asyncio.run(SendPasswordResetEmailJob(mailer).handle(_job(JobNames.SEND_PASSWORD_RESET_EMAIL, data)))
    (msg,) = mailer.sent
    assert msg.subject == "Obnovení hesla"
    assert "/auth/reset-password?token=abc" in msg.html
    assert 'lang="cs"' in msg.html


def test_email_without_recipient_fails() -> None:
    with pytest.raises(ValueError):
        asyncio.run(SendVerificationEmailJob(_Mailer()).handle(_job(JobNames.SEND_VERIFICATION_EMAIL, {"token": "x"})))


def test_contact_form_goes_to_support_inbox() -> None:
    mailer = _Mailer()
    data = {"name": "Ann", "email": "ann@example.com", "subject": "Hi", "message": "Love it", "locale": "en"}
    asyncio.run(SendContactFormJob(mailer).handle(_job(JobNames.SEND_CONTACT_FORM, data)))
    (msg,) = mailer.sent
    assert msg.to.address == "support@cookhound.local"
    assert msg.subject == "Contact form: Hi"
    assert msg.text is not None and "Message:\nLove it" in msg.text


def test_contact_form_subject_cannot_carry_extra_headers() -> None:
    mailer = _Mailer()
    data = {
        "name": "Ann\nX-Spam: yes",
        "email": "ann@example.com",
        "subject": "Hi\r\nBcc: victim@example.com",
        "message": "line one\nline two",
        "locale": "en",
    }
    asyncio.run(SendContactFormJob(mailer).handle(_job(JobNames.SEND_CONTACT_FORM, data)))
    (msg,) = mailer.sent
    assert msg.subject == "Contact form: Hi Bcc: victim@example.com"
    assert msg.text is not None
    assert "Name: Ann X-Spam: yes\n" in msg.text
    # the body keeps its line breaks
    assert "Message:\nline one\nline two" in msg.text


def test_render_escapes_values() -> None:
    email = render("contact_form", "cs", name="<b>x</b>", email="e", subject="s", message="m")
    assert "<b>x</b>" not in email.html
    assert "&lt;b&gt;x&lt;/b&gt;" in email.html
    assert email.subject == "Kontaktní formulář: s"


def test_recipe_visit_job() -> None:
    visits = InMemoryVisitCounter(max_last_viewed=2)
    job = RegisterRecipeVisitJob(visits)

    async def main() -> None:
        await job.handle(_job(JobNames.REGISTER_RECIPE_VISIT, {"recipe_id": 5, "user_id": 7}, "recipes"))
        await job.handle(_job(JobNames.REGISTER_RECIPE_VISIT, {"recipe_id": 6, "user_id": 7}, "recipes"))
        await job.handle(_job(JobNames.REGISTER_RECIPE_VISIT, {"recipe_id": 5, "user_id": None}, "recipes"))
        await job.handle(_job(JobNames.REGISTER_RECIPE_VISIT, {"recipe_id": 8, "user_id": 7}, "recipes"))
        # missing recipe id is dropped, not retried
        await job.handle(_job(JobNames.REGISTER_RECIPE_VISIT, {"user_id": 7}, "recipes"))

    asyncio.run(main())
    assert visits.views == {5: 2, 6: 1, 8: 1}
    assert visits.last_viewed[7] == [8, 6]


def test_recipe_visit_job_reraises_counter_failures() -> None:
    class _Broken(InMemoryVisitCounter):
        async def increment_view_count(self, recipe_id: int) -> None:
            raise ConnectionError("db down")

    with pytest.raises(ConnectionError):
        asyncio.run(
            RegisterRecipeVisitJob(_Broken()).handle(_job(JobNames.REGISTER_RECIPE_VISIT, {"recipe_id": 1}, "recipes"))
        )


def test_reindex_walks_batches_and_skips_failures() -> None:
    recipes = _Recipes(7)
    index = _Index(broken={4})
    out = asyncio.run(ReindexRecipesJob(recipes, index, batch_size=3).handle(_job(JobNames.REINDEX_RECIPES, {}, "search")))
    assert out == {"processed": 7, "failed": 1}
    assert sorted(index.docs) == [1, 2, 3, 5, 6, 7]
    assert recipes.calls == [(0, 3), (3, 3), (6, 3), (7, 3)]


def test_schedule_recurring_jobs() -> None:
    qm = QueueManager(connection_factory=local_connection, job_loader=load_jobs)

    async def main() -> None:
        await qm.initialize(False)
        await schedule_recurring_jobs(qm)
        await schedule_recurring_jobs(qm)
        schedulers = await qm.get_queue(QueueNames.SEARCH).get_job_schedulers()
        assert [(s.id, s.pattern) for s in schedulers] == [(f"cron:{JobNames.REINDEX_RECIPES}", "0 1 * * *")]

        with pytest.raises(InfrastructureError) as ei:
            await schedule_recurring_jobs(qm, (CronJobConfig(name="bad", queue_name="search", cron="bad"),))
        assert ei.value.code == InfrastructureErrorCode.CRON_SCHEDULER_FAILED
        await qm.shutdown()

    asyncio.run(main())
    assert len(CRON_JOBS) == 1


def test_register_recipe_visit_swallows_enqueue_failures() -> None:
    qm = QueueManager(connection_factory=local_connection, job_loader=load_jobs)

    async def main() -> None:
        assert await register_recipe_visit(qm, 12, user_id=3) is True
        job = await qm.get_queue(QueueNames.RECIPES).get_job("1")
        assert job.data == {"recipe_id": 12, "user_id": 3}

        await qm.connection.close()
        assert await register_recipe_visit(qm, 13) is False

    asyncio.run(main())


def test_worker_role_runs_visit_jobs_end_to_end() -> None:
    visits = InMemoryVisitCounter()
    deps = JobDeps(visits=visits)
    worker = QueueManager(connection_factory=local_connection, job_loader=lambda m: load_jobs(m, deps))

    async def main() -> None:
        await worker.initialize(True)
        await worker.add_job(JobNames.REGISTER_RECIPE_VISIT, {"recipe_id": 9, "user_id": 2})
        await wait_until(lambda: visits.views.get(9) == 1)
        assert visits.last_viewed[2] == [9]
        await worker.shutdown()

    asyncio.run(main())
