"""Built-in workflows end to end against the recording fake host."""

import logging

import pytest

from provisio.contracts import AlreadyCompleted, RunMessage
from provisio.dispatch import RunDispatcher
from provisio.errors import FatalStepError, TransientInfraError
from provisio.persistence import LedgerStatus, ResourceType, RunStatus
from provisio.transports.inmemory import InMemoryTransport
from provisio.validation import derive_mail_user
from provisio.worker import Worker

WORDPRESS = {"domain": "example.com", "dbName": "shop", "dbUser": "shop_user"}


async def _domain(orchestrator, domain="example.com"):
    submission = await orchestrator.provision("create_domain", {"domain": domain})
    assert submission.run.status == RunStatus.SUCCEEDED
    return submission.run


def _secret_values(vault):
    return list(vault._secrets.values())


@pytest.mark.asyncio
async def test_create_domain(orchestrator, host):
    run = await _domain(orchestrator)

    assert run.result == {"domain": "example.com", "url": "http://example.com/"}
    assert host.ran("mkdir", "-p", "/var/www/example.com")
    assert host.ran("chown", "www-data:www-data", "/var/www/example.com")
    assert "/var/www/example.com/index.html" in host.files
    vhost = host.files["/etc/apache2/sites-available/example.com.conf"].decode()
    assert "ServerName example.com" in vhost
    assert "DocumentRoot /var/www/example.com" in vhost
    assert host.index("a2ensite", "-q", "example.com.conf") < host.index(
        "apache2ctl", "configtest"
    )
    entry = await orchestrator.ledger.lookup(ResourceType.DOMAIN, "example.com")
    assert entry.status == LedgerStatus.ACTIVE
    assert entry.details["document_root"] == "/var/www/example.com"


@pytest.mark.asyncio
async def test_same_domain_twice_is_already_completed(orchestrator, host):
    first = await _domain(orchestrator)
    commands = len(host.commands)

    second = await orchestrator.provision("create_domain", {"domain": "EXAMPLE.com"})

    assert isinstance(second.admission, AlreadyCompleted)
    assert second.run_id == first.run_id
    assert second.admission.result == first.result
    assert len(host.commands) == commands
    assert len(await orchestrator.repository.list_runs()) == 1


@pytest.mark.asyncio
async def test_compensation_failure_leaves_ledger_failed(orchestrator, host):
    host.fail("apache2ctl configtest", exit_code=1)
    host.fail("rm -rf -- /var/www/example.com", exit_code=1)

    run = (await orchestrator.provision("create_domain", {"domain": "example.com"})).run

    assert run.status == RunStatus.FAILED
    assert run.error.kind == "CompensationError"
    assert host.ran("a2dissite", "-q", "example.com.conf")
    assert host.ran("rm", "-f", "--", "/etc/apache2/sites-available/example.com.conf")
    entry = await orchestrator.ledger.lookup(ResourceType.DOMAIN, "example.com")
    assert entry.status == LedgerStatus.FAILED

    again = await orchestrator.submit("create_domain", {"domain": "example.com"})
    assert again.admission.outcome == "needs_intervention"


@pytest.mark.asyncio
async def test_existing_document_root_is_not_taken_over(orchestrator, host):
    host.paths.add("/var/www/example.com")

    run = (await orchestrator.provision("create_domain", {"domain": "example.com"})).run

    assert run.status == RunStatus.ROLLED_BACK
    assert run.error.message == "document root for 'example.com' already exists"
    assert not host.ran("rm", "-rf", "--", "/var/www/example.com")


@pytest.mark.asyncio
async def test_create_database_keeps_password_out_of_state(orchestrator, host, vault, repo):
    submission = await orchestrator.provision(
        "create_database", {"dbName": "shop", "dbUser": "shop_user", "dbPassword": "Sup3r'Secret!"}
    )
    run = submission.run

    assert run.status == RunStatus.SUCCEEDED
    assert run.result == {"database": "shop", "username": "shop_user"}
    assert run.params["db_password"] == f"vault:{run.run_id}/db_password"
    stored = (await repo.get_run(run.run_id)).to_json()
    assert "Sup3r'Secret!" not in stored
    ledger = await orchestrator.ledger.list_entries()
    assert "Sup3r'Secret!" not in str([e.details for e in ledger])
    assert ("CREATE USER IF NOT EXISTS :user@'localhost' IDENTIFIED BY :password", {
        "user": "shop_user",
        "password": "Sup3r'Secret!",
    }) in host.queries


@pytest.mark.asyncio
async def test_losing_submission_does_not_keep_its_secret(orchestrator, vault):
    params = {"dbName": "shop", "dbUser": "shop_user", "dbPassword": "first-password"}
    first = await orchestrator.submit("create_database", params)
    second = await orchestrator.submit("create_database", {**params, "dbPassword": "other-pass"})

    assert second.admission.outcome == "in_flight"
    assert _secret_values(vault) == ["first-password"]
    assert first.is_new


@pytest.mark.asyncio
async def test_wordpress_install(orchestrator, host, vault, repo, caplog):
    caplog.set_level(logging.DEBUG)
    await _domain(orchestrator)

    run = (await orchestrator.provision("install_wordpress", WORDPRESS)).run

    assert run.status == RunStatus.SUCCEEDED, run.error
    assert run.result["admin_url"] == "http://example.com/wp-admin/"
    assert host.ran("wget", "-q", "-O", f"/tmp/provisio/{run.run_id}/wordpress.tar.gz")
    assert host.ran("cp", "-a", f"/tmp/provisio/{run.run_id}/extract/wordpress/.")
    config = host.files["/var/www/example.com/wp-config.php"].decode()
    assert "define('DB_NAME', 'shop');" in config
    assert host.ran("chmod", "0640", "/var/www/example.com/wp-config.php")
    assert host.ran("rm", "-rf", "--", f"/tmp/provisio/{run.run_id}")

    types = {(e.resource_type, e.status) for e in await orchestrator.ledger.list_entries()}
    assert (ResourceType.DATABASE, LedgerStatus.ACTIVE) in types
    assert (ResourceType.APP_INSTALL, LedgerStatus.ACTIVE) in types

    stored = (await repo.get_run(run.run_id)).to_json()
    for secret in _secret_values(vault):
        assert secret not in stored
        assert secret not in caplog.text


@pytest.mark.asyncio
async def test_wordpress_requires_provisioned_domain(orchestrator, host):
    run = (await orchestrator.provision("install_wordpress", WORDPRESS)).run

    assert run.status == RunStatus.ROLLED_BACK
    assert run.error.message == "domain 'example.com' is not provisioned"
    assert host.queries == []


@pytest.mark.asyncio
async def test_wordpress_config_failure_rolls_back_in_reverse(orchestrator, host, vault):
    await _domain(orchestrator)
    host.fail("write /var/www/example.com/wp-config.php", error=FatalStepError("disk full"))

    run = (await orchestrator.provision("install_wordpress", WORDPRESS)).run

    assert run.status == RunStatus.ROLLED_BACK
    assert run.error.message == "disk full"
    assert run.step("write-config-file").status.value == "failed"
    assert run.step("set-permissions").status.value == "pending"

    removed_files = host.index(
        "rm", "-rf", "--", "/var/www/example.com/index.php", "/var/www/example.com/wp-content"
    )
    removed_archive = host.index(
        "rm", "-f", "--", f"/tmp/provisio/{run.run_id}/wordpress.tar.gz"
    )
    assert removed_files < removed_archive

    undo = [sql.split()[0] for sql, _ in host.queries if sql.split()[0] in ("REVOKE", "DROP")]
    assert undo == ["REVOKE", "DROP", "DROP"]
    assert host.queries[-1][0] == "DROP DATABASE IF EXISTS `shop`"
    assert "shop" not in host.schemas
    assert _secret_values(vault) == []

    database = [
        e for e in await orchestrator.ledger.list_entries(ResourceType.DATABASE)
    ]
    assert [(e.natural_key, e.status) for e in database] == [("shop", LedgerStatus.ROLLED_BACK)]
    domain = await orchestrator.ledger.lookup(ResourceType.DOMAIN, "example.com")
    assert domain.status == LedgerStatus.ACTIVE


@pytest.mark.asyncio
async def test_download_is_retried_on_network_failure(orchestrator, host, retry_delays):
    await _domain(orchestrator)
    host.fail("wget", exit_code=4, times=2)

    run = (await orchestrator.provision("install_wordpress", WORDPRESS)).run

    assert run.status == RunStatus.SUCCEEDED
    assert run.step("download-release").attempts == 3
    assert host.count("wget") == 3
    assert len(retry_delays) == 2
    assert retry_delays[0] < retry_delays[1]


@pytest.mark.asyncio
async def test_download_gives_up_after_three_attempts(orchestrator, host, retry_delays):
    await _domain(orchestrator)
    host.fail("wget", exit_code=4, times=5)

    run = (await orchestrator.provision("install_wordpress", WORDPRESS)).run

    assert run.status == RunStatus.ROLLED_BACK
    assert host.count("wget") == 3
    assert run.error.message == "wget exited with status 4 (gave up after 3 attempts)"


@pytest.mark.asyncio
async def test_database_name_held_by_another_install(orchestrator, host):
    await _domain(orchestrator, "example.com")
    await _domain(orchestrator, "example.org")
    await orchestrator.provision("install_wordpress", WORDPRESS)

    other = {**WORDPRESS, "domain": "example.org"}
    run = (await orchestrator.provision("install_wordpress", other)).run

    assert run.status == RunStatus.ROLLED_BACK
    assert run.error.kind == "LedgerConflict"
    assert "shop" in host.schemas


@pytest.mark.asyncio
async def test_email_account(orchestrator, host):
    run = (
        await orchestrator.provision(
            "create_email_account",
            {"email": "info@example.com", "password": "mailbox-pass", "quota": "250"},
        )
    ).run

    assert run.status == RunStatus.SUCCEEDED
    assert run.result == {"email": "info@example.com", "quota_mb": "250"}
    user = run.params["mail_user"]
    assert host.ran("useradd", "-m", "-s", "/usr/sbin/nologin", user)
    assert host.files["/etc/postfix/virtual_users"] == f"info@example.com {user}\n".encode()
    assert host.ran("mkdir", "-p", f"/var/mail/example.com/{user}")
    assert host.ran("postmap", "/etc/postfix/virtual_users")
    dovecot = host.files["/etc/dovecot/users"].decode()
    assert dovecot.startswith("info@example.com:{BLF-CRYPT}$2")
    assert "mailbox-pass" not in dovecot
    assert host.ran("systemctl", "reload", "dovecot")


@pytest.mark.asyncio
async def test_email_rollback_removes_map_entries(orchestrator, host):
    host.files["/etc/postfix/virtual_users"] = b"sales@example.com sales\n"
    host.fail("systemctl reload postfix", exit_code=1, times=3)

    run = (
        await orchestrator.provision(
            "create_email_account", {"email": "info@example.com", "password": "mailbox-pass"}
        )
    ).run

    assert run.status == RunStatus.ROLLED_BACK
    assert host.files["/etc/postfix/virtual_users"] == b"sales@example.com sales\n"
    user = run.params["mail_user"]
    assert host.ran("userdel", "-r", user)
    assert user not in host.users
    assert host.ran("rm", "-rf", "--", f"/var/mail/example.com/{user}")


@pytest.mark.asyncio
async def test_certificate_via_worker(orchestrator, host):
    await _domain(orchestrator)
    transport = InMemoryTransport()
    dispatcher = RunDispatcher(orchestrator, transport, topic="runs")

    submission = await orchestrator.submit(
        "issue_certificate", {"domain": "example.com", "email": "admin@example.com"}
    )
    await dispatcher.dispatch(submission.run_id, submission.run.operation_key)
    assert transport.pending("runs") == 1

    worker = Worker(orchestrator, transport, topic="runs", concurrency=2, stalled_after=None)
    await worker.start(lifespan=0.3)

    assert worker.executed == [submission.run_id]
    run = await orchestrator.get_run(submission.run_id)
    assert run.status == RunStatus.SUCCEEDED
    assert run.result == {"domain": "example.com", "url": "https://example.com/"}
    assert "example.com" in host.certificates
    assert host.ran("certbot", "--apache", "-d", "example.com")


@pytest.mark.asyncio
async def test_worker_requeues_a_run_that_raised(orchestrator, monkeypatch):
    transport = InMemoryTransport()
    dispatcher = RunDispatcher(orchestrator, transport, topic="runs")
    submission = await orchestrator.submit("create_domain", {"domain": "example.com"})
    await dispatcher.dispatch(submission.run_id, submission.run.operation_key)

    execute = orchestrator.execute
    calls = []

    async def flaky_execute(run_id):
        calls.append(run_id)
        if len(calls) == 1:
            raise ConnectionError("repository unavailable")
        return await execute(run_id)

    monkeypatch.setattr(orchestrator, "execute", flaky_execute)
    worker = Worker(orchestrator, transport, topic="runs", stalled_after=None)
    await worker.start(lifespan=0.3)

    assert calls == [submission.run_id, submission.run_id]
    assert worker.executed == [submission.run_id]
    assert (await orchestrator.get_run(submission.run_id)).status == RunStatus.SUCCEEDED
    assert transport.pending("runs") == 0


@pytest.mark.asyncio
async def test_worker_stops_redelivering(orchestrator, monkeypatch):
    transport = InMemoryTransport()
    await transport.publish("runs", RunMessage(run_id="no-such-run"))
    await transport.publish("runs", RunMessage(run_id="broken"))
    calls = []
    execute = orchestrator.execute

    async def failing_execute(run_id):
        calls.append(run_id)
        if run_id == "broken":
            raise ConnectionError("repository unavailable")
        return await execute(run_id)

    monkeypatch.setattr(orchestrator, "execute", failing_execute)
    worker = Worker(
        orchestrator, transport, topic="runs", stalled_after=None, max_deliveries=3
    )
    await worker.start(lifespan=0.5)

    assert calls.count("no-such-run") == 1
    assert calls.count("broken") == 3
    assert worker.executed == []
    assert transport.pending("runs") == 0


@pytest.mark.asyncio
async def test_background_dispatch_without_transport(orchestrator):
    dispatcher = RunDispatcher(orchestrator)
    submission = await orchestrator.submit("create_backup", {"type": "website", "name": "example.com"})

    await dispatcher.dispatch(submission.run_id)
    await dispatcher.drain()

    run = await orchestrator.get_run(submission.run_id)
    assert run.status == RunStatus.SUCCEEDED
    assert run.result["backup_file"].startswith("example.com_")
    assert run.result["backup_file"].endswith(".tar.gz")


@pytest.mark.asyncio
async def test_nextjs_install(orchestrator, host):
    await _domain(orchestrator)
    host.tools.discard("npx")

    missing = (await orchestrator.provision("install_nextjs", {"domain": "example.com"})).run
    assert missing.status == RunStatus.ROLLED_BACK
    assert missing.error.message == "npx is not installed"

    host.tools.add("npx")
    run = (await orchestrator.provision("install_nextjs", {"domain": "example.com"})).run

    assert run.status == RunStatus.SUCCEEDED
    assert run.result == {"app": "Next.js", "url": "http://example.com:3000/"}
    assert host.ran("npm", "run", "build")


class Crash(BaseException):
    """Stands in for the process dying right after a command ran."""


@pytest.mark.asyncio
async def test_domain_resumes_after_crash_once_directory_exists(orchestrator, host):
    host.fail("mkdir -p /var/www/example.com", error=Crash(), after=True)
    submission = await orchestrator.submit("create_domain", {"domain": "example.com"})
    with pytest.raises(Crash):
        await orchestrator.execute(submission.run_id)

    [run] = await orchestrator.recover(stalled_after=0)

    assert run.status == RunStatus.SUCCEEDED, run.error
    assert host.count("mkdir", "-p", "/var/www/example.com") == 2
    assert host.count("test", "-e", "/var/www/example.com") == 1
    assert not host.ran("rm")
    entry = await orchestrator.ledger.lookup(ResourceType.DOMAIN, "example.com")
    assert entry.status == LedgerStatus.ACTIVE
    assert entry.details["document_root"] == "/var/www/example.com"


@pytest.mark.asyncio
async def test_database_resumes_after_crash_once_schema_exists(orchestrator, host):
    host.fail("CREATE DATABASE", error=Crash(), after=True)
    submission = await orchestrator.submit(
        "create_database", {"dbName": "shop", "dbUser": "shop_user"}
    )
    with pytest.raises(Crash):
        await orchestrator.execute(submission.run_id)
    assert "shop" in host.schemas

    [run] = await orchestrator.recover(stalled_after=0)

    assert run.status == RunStatus.SUCCEEDED, run.error
    creates = [sql for sql, _ in host.queries if sql.startswith("CREATE DATABASE")]
    assert len(creates) == 2
    entry = await orchestrator.ledger.lookup(ResourceType.DATABASE, "shop")
    assert entry.status == LedgerStatus.ACTIVE


@pytest.mark.asyncio
async def test_database_creation_is_retried_after_lost_reply(orchestrator, host, retry_delays):
    host.fail(
        "CREATE DATABASE", error=TransientInfraError("database server unavailable"), after=True
    )

    run = (
        await orchestrator.provision("create_database", {"dbName": "shop", "dbUser": "shop_user"})
    ).run

    assert run.status == RunStatus.SUCCEEDED, run.error
    assert run.step("create-database").attempts == 2
    assert "shop" in host.schemas


@pytest.mark.asyncio
async def test_second_application_leaves_installed_site_alone(orchestrator, host):
    await _domain(orchestrator)
    first = (await orchestrator.provision("install_wordpress", WORDPRESS)).run
    assert first.status == RunStatus.SUCCEEDED
    commands = len(host.commands)

    drupal = {"domain": "example.com", "dbName": "cms", "dbUser": "cms_user"}
    run = (await orchestrator.provision("install_drupal", drupal)).run

    assert run.status == RunStatus.ROLLED_BACK
    assert run.error.kind == "LedgerConflict"
    assert run.error.message == "app_install 'example.com' already exists"
    assert not any(cmd[0] in ("cp", "rm", "wget") for cmd in host.commands[commands:])
    assert "/var/www/example.com/wp-content" in host.paths
    assert "/var/www/example.com/wp-config.php" in host.files
    entry = await orchestrator.ledger.lookup(ResourceType.APP_INSTALL, "example.com")
    assert entry.status == LedgerStatus.ACTIVE
    assert entry.run_id == first.run_id


@pytest.mark.asyncio
async def test_install_keeps_files_it_did_not_place(orchestrator, host):
    await _domain(orchestrator)
    host.paths.add("/var/www/example.com/wp-content")

    run = (await orchestrator.provision("install_wordpress", WORDPRESS)).run

    assert run.status == RunStatus.ROLLED_BACK
    assert run.error.message == "document root already contains ['wp-content']"
    assert not host.ran("cp")
    assert "/var/www/example.com/wp-content" in host.paths
    assert "/var/www/example.com/index.html" in host.files


@pytest.mark.asyncio
async def test_email_account_never_adopts_existing_system_user(orchestrator, host):
    user = derive_mail_user({"email": "info@example.com"})
    host.users.add(user)

    run = (
        await orchestrator.provision(
            "create_email_account", {"email": "info@example.com", "password": "mailbox-pass"}
        )
    ).run

    assert run.status == RunStatus.ROLLED_BACK
    assert run.error.message == f"system user '{user}' already exists"
    assert not host.ran("useradd")
    assert not host.ran("userdel")
    assert user in host.users


@pytest.mark.asyncio
async def test_mailboxes_on_different_domains_have_separate_users(orchestrator, host):
    for email in ("info@example.com", "info@example.org"):
        run = (
            await orchestrator.provision(
                "create_email_account", {"email": email, "password": "mailbox-pass"}
            )
        ).run
        assert run.status == RunStatus.SUCCEEDED, run.error

    created = [cmd[-1] for cmd in host.commands if cmd[0] == "useradd"]
    assert len(created) == 2
    assert len(set(created)) == 2
