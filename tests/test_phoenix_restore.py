"""Restoring a host from a backup archive."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from phoenix_toolkit.proxy import NEUTRALISED_MARK
from phoenix_toolkit.report import OutcomeStatus
from phoenix_toolkit.restore import (
    NODESOURCE_SETUP,
    PYTHON_PACKAGES,
    RestoreError,
    RestoreJob,
    listening_processes,
    resolve_python_port,
    restore_apache,
    restore_backup,
    restore_mongodb,
    restore_nginx,
    restore_redis,
    synthesize_python_units,
)
from tests.helpers.archives import build_backup, tar_bytes, write_tar, write_tree
from tests.helpers.fake_runner import FakeRunner

NGINX_LISTENING = 'LISTEN 0 511 0.0.0.0:80 0.0.0.0:* users:(("nginx",pid=812,fd=6))\n'
PM2_STARTUP = (
    "[PM2] Init System found: systemd\n"
    "[PM2] To setup the Startup Script, copy/paste the following command:\n"
    "sudo env PATH=$PATH:/usr/bin pm2 startup systemd -u alice --hp /home/alice\n"
)


def _restore(ctx, backup_file: Path, tmp_path: Path) -> RestoreJob:
    return restore_backup(ctx, backup_file, work_dir=tmp_path / "work", username="alice")


def test_pm2_application_is_placed_and_started(host_root: Path, tmp_path: Path, make_ctx):
    backup_file = build_backup(
        tmp_path / "backup.tar.gz",
        {
            "apps/pm2-shop-api.tar.gz": tar_bytes(
                {
                    "shop-api/package.json": json.dumps({"scripts": {"start": "node index.js"}}),
                    "shop-api/index.js": "require('express')",
                }
            ),
            "apps/pm2-processes.json": json.dumps(
                [{"name": "shop-api", "pm2_env": {"pm_cwd": "/home/alice/shop-api"}}]
            ),
        },
    )
    runner = FakeRunner()
    runner.respond("pm2", "startup", stdout=PM2_STARTUP)
    ctx = make_ctx("restore", runner=runner)

    job = _restore(ctx, backup_file, tmp_path)

    app_dir = host_root / "home" / "alice" / "shop-api"
    assert (app_dir / "package.json").is_file()
    assert job.metadata is not None and job.metadata.source_hostname == "source-host"
    assert runner.ran("bash", "-c", NODESOURCE_SETUP)
    assert runner.ran("npm", "install", "-g", "pm2")
    assert not runner.ran("apt-get", "install", "-y", "-qq", *PYTHON_PACKAGES)
    assert ctx.report.find("runtimes", "python")[0].status is OutcomeStatus.SKIPPED

    [production] = runner.calls_to("sudo", "-u", "alice", "npm", "install", "--production")
    assert production.cwd == str(app_dir)
    [start] = runner.calls_to("sudo", "-u", "alice", "pm2", "start")
    assert start.args[3:] == ["pm2", "start", "npm", "--name", "shop-api", "--", "start"]
    assert start.cwd == str(app_dir)
    assert runner.ran("sudo", "-u", "alice", "pm2", "save")
    assert runner.ran("sudo", "env", "PATH=$PATH:/usr/bin", "pm2", "startup")
    assert not (tmp_path / "work").exists() or list((tmp_path / "work").iterdir()) == []


def test_systemd_unit_with_python_dependencies(host_root: Path, tmp_path: Path, make_ctx):
    backup_file = build_backup(
        tmp_path / "backup.tar.gz",
        {
            "system/systemd/api.service": (
                "[Service]\nWorkingDirectory=/srv/api\n"
                "ExecStart=/srv/api/venv/bin/gunicorn api.wsgi:application\n"
            ),
            "system/systemd/do-agent.service": "[Service]\nExecStart=/opt/digitalocean/bin/do-agent\n",
            "apps/systemd-api.tar.gz": tar_bytes(
                {"srv/api/requirements.txt": "flask\n", "srv/api/app.py": "app = None\n"}
            ),
        },
    )
    runner = FakeRunner()
    ctx = make_ctx("restore", runner=runner)

    _restore(ctx, backup_file, tmp_path)

    assert (host_root / "srv" / "api" / "requirements.txt").is_file()
    assert (host_root / "etc" / "systemd" / "system" / "api.service").is_file()
    assert not (host_root / "etc" / "systemd" / "system" / "do-agent.service").exists()
    assert runner.ran("apt-get", "install", "-y", "-qq", *PYTHON_PACKAGES)
    assert not runner.ran("bash", "-c", NODESOURCE_SETUP)
    assert not runner.ran("npm", "install", "-g", "pm2")

    venv = [call for call in runner.calls if call.args[-4:] == ["python3", "-m", "venv", "/srv/api/venv"]]
    pip = [call for call in runner.calls if call.args[-4:] == ["/srv/api/venv/bin/pip", "install", "-r", "requirements.txt"]]
    assert len(venv) == 1
    assert pip and pip[0].cwd == str(host_root / "srv" / "api")
    assert runner.ran("systemctl", "daemon-reload")
    assert runner.ran("systemctl", "enable", "api")
    assert runner.ran("systemctl", "start", "api")
    assert not runner.ran("systemctl", "start", "do-agent")


def test_plain_systemd_unit_needs_no_runtime(host_root: Path, tmp_path: Path, make_ctx):
    backup_file = build_backup(
        tmp_path / "backup.tar.gz",
        {
            "system/systemd/svc.service": "[Service]\nWorkingDirectory=/opt/svc\nExecStart=/opt/svc/bin/svc\n",
            "apps/systemd-svc.tar.gz": tar_bytes({"opt/svc/bin/svc": "#!/bin/sh\n"}),
        },
    )
    runner = FakeRunner()
    ctx = make_ctx("restore", runner=runner)

    _restore(ctx, backup_file, tmp_path)

    assert (host_root / "etc" / "systemd" / "system" / "svc.service").is_file()
    assert (host_root / "opt" / "svc" / "bin" / "svc").is_file()
    assert not runner.ran("apt-get", "install", "-y", "-qq", "nodejs")
    assert not runner.ran("apt-get", "install", "-y", "-qq", *PYTHON_PACKAGES)
    assert not any("npm" in call.args or "python3" in call.args for call in runner.calls)
    assert runner.ran("systemctl", "start", "svc")
    assert {o.name for o in ctx.report.by_status(OutcomeStatus.SKIPPED)} >= {"node", "python"}


def test_every_database_dump_is_created_and_loaded(tmp_path: Path, make_ctx):
    backup_file = build_backup(
        tmp_path / "backup.tar.gz",
        {
            "databases/mysql-shop.sql": "CREATE TABLE orders (id int);\n",
            "databases/mysql-blog.sql": "CREATE TABLE posts (id int);\n",
            "databases/postgres-shop.sql": "CREATE TABLE events (id int);\n",
        },
    )
    runner = FakeRunner()
    runner.fail("sudo", "-u", "postgres", "createdb", stderr='database "shop" already exists')
    ctx = make_ctx("restore", runner=runner)

    _restore(ctx, backup_file, tmp_path)

    assert runner.ran("apt-get", "install", "-y", "-qq", "mysql-server")
    assert runner.ran("mysql", "-e", "CREATE DATABASE IF NOT EXISTS `shop`")
    assert runner.ran("mysql", "-e", "CREATE DATABASE IF NOT EXISTS `blog`")
    [blog] = runner.calls_to("mysql", "blog")
    [shop] = runner.calls_to("mysql", "shop")
    assert blog.stdin == "CREATE TABLE posts (id int);\n"
    assert shop.stdin == "CREATE TABLE orders (id int);\n"

    assert runner.ran("apt-get", "install", "-y", "-qq", "postgresql")
    assert runner.ran("sudo", "-u", "postgres", "createdb", "shop")
    [load] = runner.calls_to("sudo", "-u", "postgres", "psql", "shop")
    assert load.stdin == "CREATE TABLE events (id int);\n"
    assert ctx.report.find("postgres", "create shop")[0].status is OutcomeStatus.SKIPPED
    assert ctx.report.find("postgres", "load shop")[0].status is OutcomeStatus.OK
    assert not ctx.report.failures


def test_restoring_twice_only_creates_users_once(host_root: Path, tmp_path: Path, make_ctx):
    backup_file = build_backup(
        tmp_path / "backup.tar.gz",
        {
            "apps/home-bob.tar.gz": tar_bytes({"home/bob/notes.txt": "remember\n"}),
            "system/crontab-bob": "@daily /home/bob/bin/report\n",
        },
        manifest=[
            {"kind": "home", "encoded_name": "home-bob.tar.gz", "original_path": "/home/bob", "owner": "bob"}
        ],
    )
    first = FakeRunner()
    first.fail("id", "bob")

    _restore(make_ctx("restore", runner=first), backup_file, tmp_path)

    assert first.ran("useradd", "-m", "-s", "/bin/bash", "bob")
    assert first.ran("chown", "-R", "bob:bob", "/home/bob")
    assert (host_root / "home" / "bob" / "notes.txt").read_text() == "remember\n"

    second = FakeRunner()
    _restore(make_ctx("restore", runner=second), backup_file, tmp_path)

    assert not second.ran("useradd")
    assert second.ran("chown", "-R", "bob:bob", "/home/bob")
    assert second.calls_to("crontab", "-u", "bob")
    assert (host_root / "home" / "bob" / "notes.txt").read_text() == "remember\n"


def test_env_files_use_manifest_paths(host_root: Path, tmp_path: Path, make_ctx):
    write_tree(host_root, {"home/alice/my_app/app.py": ""})
    backup_file = build_backup(
        tmp_path / "backup.tar.gz",
        {
            "configs/env/home_alice_my_app_.env": "SECRET=1\n",
            "configs/env/home_carol_site_.env": "SECRET=2\n",
            "system/crontab-system": "17 * * * * root run-parts /etc/cron.hourly\n",
            "system/crontab-ghost": "* * * * * true\n",
        },
        manifest=[
            {
                "kind": "env-file",
                "encoded_name": "home_alice_my_app_.env",
                "original_path": "/home/alice/my_app/.env",
                "owner": "alice",
            }
        ],
    )
    runner = FakeRunner()
    runner.fail("id", "ghost")
    ctx = make_ctx("restore", runner=runner)

    _restore(ctx, backup_file, tmp_path)

    assert (host_root / "home" / "alice" / "my_app" / ".env").read_text() == "SECRET=1\n"
    assert not (host_root / "home" / "alice" / "my" / "app").exists()
    assert runner.ran("chown", "alice:alice", "/home/alice/my_app/.env")
    assert ctx.report.find("env", "/home/carol/site/.env")[0].status is OutcomeStatus.SKIPPED
    assert ctx.report.find("crontab", "/etc/crontab")[0].status is OutcomeStatus.SKIPPED
    assert ctx.report.find("crontab", "ghost")[0].status is OutcomeStatus.SKIPPED
    assert not runner.calls_to("crontab")


def test_missing_or_corrupt_backup_raises(tmp_path: Path, make_ctx):
    with pytest.raises(RestoreError):
        _restore(make_ctx(), tmp_path / "missing.tar.gz", tmp_path)

    corrupt = tmp_path / "corrupt.tar.gz"
    corrupt.write_text("definitely not a tarball")
    with pytest.raises(RestoreError):
        _restore(make_ctx(), corrupt, tmp_path)


def test_dry_run_leaves_the_host_untouched(host_root: Path, tmp_path: Path, make_ctx):
    backup_file = build_backup(
        tmp_path / "backup.tar.gz",
        {
            "apps/home-bob.tar.gz": tar_bytes({"home/bob/notes.txt": "remember\n"}),
            "databases/mysql-shop.sql": "CREATE TABLE orders (id int);\n",
        },
    )
    runner = FakeRunner(dry_run=True)

    _restore(make_ctx("restore", runner=runner), backup_file, tmp_path)

    assert runner.calls == []
    assert not (host_root / "home").exists()
    assert "DRY-RUN: useradd -m -s /bin/bash bob" in runner.echoed
    assert any(line.startswith("DRY-RUN: mysql shop < ") for line in runner.echoed)


NGINX_SITE = """server {
    listen 80;
    listen 443 ssl;
    ssl_certificate /etc/letsencrypt/live/shop/fullchain.pem;
    root /var/www/shop;
}
"""


def _proxy_job(ctx, tmp_path: Path, members: dict[str, bytes]) -> RestoreJob:
    workdir = tmp_path / "work"
    for name, data in members.items():
        path = workdir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    return RestoreJob(ctx=ctx, workdir=workdir, username="alice")


def test_nginx_restore_neutralises_tls_before_config_test(host_root: Path, tmp_path: Path, ctx, fake_runner: FakeRunner):
    job = _proxy_job(
        ctx,
        tmp_path,
        {
            "configs/nginx.tar.gz": tar_bytes(
                {
                    "etc/nginx/sites-available/shop": NGINX_SITE,
                    "etc/nginx/sites-enabled/shop-ssl": NGINX_SITE,
                }
            ),
            "apps/nginx-root_var_www_shop.tar.gz": tar_bytes({"var/www/shop/index.html": "<h1>shop</h1>"}),
        },
    )

    restore_nginx(job)

    site = (host_root / "etc" / "nginx" / "sites-available" / "shop").read_text()
    assert "# phoenix: certificate missing, disabled: listen 443 ssl;" in site
    assert not (host_root / "etc" / "nginx" / "sites-enabled" / "shop-ssl").exists()
    assert (host_root / "var" / "www" / "shop" / "index.html").is_file()
    assert fake_runner.ran("nginx", "-t")
    assert fake_runner.ran("systemctl", "restart", "nginx")


def test_failed_nginx_config_test_leaves_nginx_stopped(tmp_path: Path, ctx, fake_runner: FakeRunner):
    fake_runner.fail("nginx", "-t")
    job = _proxy_job(ctx, tmp_path, {"configs/nginx.tar.gz": tar_bytes({"etc/nginx/nginx.conf": "events {}\n"})})

    restore_nginx(job)

    assert not fake_runner.ran("systemctl", "restart", "nginx")
    assert ctx.report.find("nginx", "nginx configtest")[0].status is OutcomeStatus.FAILED


def test_apache_is_skipped_when_nginx_owns_port_80(tmp_path: Path, ctx, fake_runner: FakeRunner):
    fake_runner.respond("ss", "-tlnp", stdout="State Recv-Q\n" + NGINX_LISTENING)
    job = _proxy_job(ctx, tmp_path, {"configs/apache.tar.gz": tar_bytes({"etc/apache2/apache2.conf": ""})})

    restore_apache(job)

    assert not fake_runner.ran("apt-get", "install", "-y", "-qq", "apache2")
    assert ctx.report.find("apache", "apache2")[0].status is OutcomeStatus.SKIPPED


def _django_home(host_root: Path, **extra: str) -> None:
    write_tree(
        host_root / "home" / "alice" / "shop",
        {
            "manage.py": "",
            "shop/wsgi.py": "application = None\n",
            "requirements.txt": "django\n",
            **extra,
        },
    )


def test_django_apps_get_a_gunicorn_unit(host_root: Path, tmp_path: Path, ctx, fake_runner: FakeRunner):
    _django_home(host_root)
    ctx.provide("python")
    job = _proxy_job(
        ctx,
        tmp_path,
        {"processes/python-servers.txt": b"/home/alice/shop/venv/bin/gunicorn shop.wsgi:application --bind 0.0.0.0:8001\n"},
    )

    synthesize_python_units(job)

    unit = (host_root / "etc" / "systemd" / "system" / "gunicorn-shop.service").read_text()
    assert "User=alice" in unit
    assert "WorkingDirectory=/home/alice/shop" in unit
    assert (
        "ExecStart=/home/alice/shop/venv/bin/gunicorn --workers 3 --bind 0.0.0.0:8001 shop.wsgi:application"
        in unit
    )
    assert fake_runner.ran("sudo", "-u", "alice", "/home/alice/shop/venv/bin/pip", "install", "gunicorn")
    assert fake_runner.ran("systemctl", "start", "gunicorn-shop")
    assert not fake_runner.ran("sudo", "-u", "alice", "bash", "-c")

    synthesize_python_units(job)

    assert ctx.report.find("gunicorn", "gunicorn-shop.service")[-1].status is OutcomeStatus.SKIPPED


def test_django_start_script_and_direct_fallback(host_root: Path, tmp_path: Path, ctx, fake_runner: FakeRunner):
    _django_home(host_root, **{"start.sh": "exec gunicorn shop.wsgi\n"})
    ctx.provide("python")
    fake_runner.fail("systemctl", "start", "gunicorn-shop")
    job = _proxy_job(ctx, tmp_path, {})

    synthesize_python_units(job)

    unit = (host_root / "etc" / "systemd" / "system" / "gunicorn-shop.service").read_text()
    assert "ExecStart=/bin/bash /home/alice/shop/start.sh" in unit
    [fallback] = fake_runner.calls_to("sudo", "-u", "alice", "bash", "-c")
    assert "nohup /home/alice/shop/venv/bin/gunicorn --workers 3 --bind 0.0.0.0:8000" in fallback.args[-1]
    assert fallback.args[-1].startswith("cd /home/alice/shop && ")


def test_django_apps_served_by_an_existing_unit_are_left_alone(host_root: Path, tmp_path: Path, ctx, fake_runner: FakeRunner):
    _django_home(host_root)
    write_tree(host_root, {"etc/systemd/system/shop.service": "[Service]\nWorkingDirectory=/home/alice/shop/\n"})
    ctx.provide("python")

    synthesize_python_units(_proxy_job(ctx, tmp_path, {}))

    assert not (host_root / "etc" / "systemd" / "system" / "gunicorn-shop.service").exists()
    assert not fake_runner.ran("systemctl", "start", "gunicorn-shop")


@pytest.mark.parametrize(
    ("servers", "env", "expected"),
    [
        (None, None, 8000),
        ("gunicorn other.wsgi --bind 0.0.0.0:9000\ngunicorn shop.wsgi:application --bind 127.0.0.1:8001\n", None, 8001),
        ("gunicorn other.wsgi --bind 0.0.0.0:9000\n", None, 9000),
        ("uvicorn shop.asgi:application --host 0.0.0.0 --port 8100\n", None, 8100),
        ("gunicorn shop.wsgi --bind 0.0.0.0:8001\n", "DEBUG=0\nPORT=8500\n", 8500),
        (None, "PORT=abc\n", 8000),
    ],
)
def test_resolve_python_port(tmp_path: Path, servers: str | None, env: str | None, expected: int):
    if env is not None:
        (tmp_path / ".env").write_text(env)

    assert resolve_python_port(tmp_path, "shop", servers) == expected


def test_listening_processes():
    output = "State Recv-Q Send-Q Local Peer Process\n" + NGINX_LISTENING + "LISTEN 0 5 [::]:22 [::]:*\n"

    assert listening_processes(output) == [(80, "nginx"), (22, "")]


def test_corrupt_nested_archive_is_recorded(host_root: Path, tmp_path: Path, make_ctx):
    backup_file = write_tar(
        tmp_path / "backup.tar.gz",
        {"apps/home-bob.tar.gz": b"garbage", "metadata.json": "{}"},
    )
    ctx = make_ctx("restore")

    _restore(ctx, backup_file, tmp_path)

    assert ctx.report.find("homes", "home-bob.tar.gz")[0].status is OutcomeStatus.FAILED


API_UNIT = (
    "[Service]\nUser=deploy\nWorkingDirectory=/srv/api\n"
    "ExecStart=/srv/api/venv/bin/gunicorn api.wsgi:application\n"
)


def test_systemd_dependencies_install_as_the_recorded_owner(host_root: Path, tmp_path: Path, make_ctx):
    backup_file = build_backup(
        tmp_path / "backup.tar.gz",
        {
            "system/systemd/api.service": API_UNIT,
            "apps/systemd-api.tar.gz": tar_bytes({"srv/api/requirements.txt": "flask\n"}),
        },
        manifest=[
            {"kind": "systemd-app", "encoded_name": "systemd-api.tar.gz", "original_path": "/srv/api", "owner": "deploy"}
        ],
    )
    runner = FakeRunner()
    runner.fail("id", "deploy")
    ctx = make_ctx("restore", runner=runner)

    _restore(ctx, backup_file, tmp_path)

    useradd = runner.commands.index(["useradd", "-s", "/bin/bash", "deploy"])
    chown = runner.commands.index(["chown", "-R", "deploy:deploy", "/srv/api"])
    pip = [call for call in runner.calls if "/srv/api/venv/bin/pip" in call.args]
    assert [call.args[:3] for call in pip] == [["sudo", "-u", "deploy"]]
    assert pip[0].cwd == str(host_root / "srv" / "api")
    assert useradd < chown < runner.calls.index(pip[0])
    assert runner.ran("sudo", "-u", "deploy", "python3", "-m", "venv", "/srv/api/venv")


def test_systemd_owner_falls_back_to_the_unit_user(host_root: Path, tmp_path: Path, make_ctx):
    backup_file = build_backup(
        tmp_path / "backup.tar.gz",
        {
            "system/systemd/api.service": API_UNIT,
            "apps/systemd-api.tar.gz": tar_bytes({"srv/api/requirements.txt": "flask\n"}),
        },
    )
    runner = FakeRunner()

    _restore(make_ctx("restore", runner=runner), backup_file, tmp_path)

    assert not runner.ran("useradd")
    assert runner.ran("chown", "-R", "deploy:deploy", "/srv/api")
    assert runner.ran("sudo", "-u", "deploy", "/srv/api/venv/bin/pip", "install", "-r", "requirements.txt")


def test_apache_restore_disables_certbot_sites(host_root: Path, tmp_path: Path, ctx, fake_runner: FakeRunner):
    vhost = (
        "<VirtualHost *:443>\n"
        "    DocumentRoot /srv/blog/public\n"
        "    SSLEngine on\n"
        "    SSLCertificateFile /etc/letsencrypt/live/blog/fullchain.pem\n"
        "</VirtualHost>\n"
    )
    job = _proxy_job(
        ctx,
        tmp_path,
        {
            "configs/apache.tar.gz": tar_bytes(
                {
                    "etc/apache2/apache2.conf": "ServerName localhost\n",
                    "etc/apache2/sites-available/blog-le-ssl.conf": vhost,
                    "etc/apache2/sites-enabled/blog-le-ssl.conf": vhost,
                }
            ),
            "apps/apache-root_srv_blog_public.tar.gz": tar_bytes({"srv/blog/public/index.php": "<?php echo 'blog';"}),
        },
    )

    restore_apache(job)

    apache = host_root / "etc" / "apache2"
    assert fake_runner.ran("apt-get", "install", "-y", "-qq", "apache2")
    assert not (apache / "sites-enabled" / "blog-le-ssl.conf").exists()
    assert f"    {NEUTRALISED_MARK}SSLEngine on" in (apache / "sites-available" / "blog-le-ssl.conf").read_text()
    assert (host_root / "srv" / "blog" / "public" / "index.php").is_file()
    configtest = fake_runner.commands.index(["apache2ctl", "configtest"])
    assert fake_runner.commands.index(["systemctl", "restart", "apache2"]) > configtest
    assert fake_runner.ran("systemctl", "enable", "apache2")


def test_mongodb_dump_is_restored_from_the_official_repository(
    host_root: Path, tmp_path: Path, ctx, fake_runner: FakeRunner
):
    fake_runner.respond("lsb_release", "-cs", stdout="noble\n")
    fake_runner.fail("apt-get", "install", "-y", "-qq", "mongodb-org")
    job = _proxy_job(ctx, tmp_path, {"databases/mongodb/shop/orders.bson": b"\x00"})

    restore_mongodb(job)

    [key] = fake_runner.calls_to("bash", "-c")
    assert "gpg --yes -o /usr/share/keyrings/mongodb-server-7.0.gpg --dearmor" in key.args[-1]
    sources = (host_root / "etc" / "apt" / "sources.list.d" / "mongodb-org-7.0.list").read_text()
    assert "https://repo.mongodb.org/apt/ubuntu noble/mongodb-org/7.0 multiverse" in sources
    assert fake_runner.ran("apt-get", "install", "-y", "-qq", "mongodb")
    assert fake_runner.ran("systemctl", "start", "mongod")
    assert fake_runner.ran("mongorestore", str(tmp_path / "work" / "databases" / "mongodb"))


def test_redis_dump_replaces_the_data_file_while_stopped(tmp_path: Path, ctx, fake_runner: FakeRunner):
    job = _proxy_job(ctx, tmp_path, {"databases/dump.rdb": b"REDIS0011"})

    restore_redis(job)

    dump = str(tmp_path / "work" / "databases" / "dump.rdb")
    assert fake_runner.ran("apt-get", "install", "-y", "-qq", "redis-server")
    assert fake_runner.commands[-4:] == [
        ["systemctl", "stop", "redis-server"],
        ["cp", dump, "/var/lib/redis/dump.rdb"],
        ["chown", "redis:redis", "/var/lib/redis/dump.rdb"],
        ["systemctl", "start", "redis-server"],
    ]


def test_restore_without_mongodb_or_redis_artifacts_does_nothing(tmp_path: Path, ctx, fake_runner: FakeRunner):
    job = _proxy_job(ctx, tmp_path, {})

    restore_mongodb(job)
    restore_redis(job)

    assert fake_runner.calls == []
