"""Unit tests for individual step helpers."""

import json

from conftest import ADMIN_KEY, DEPLOY_KEY, OTHER_KEY
from vpsharden.accounts import AccountState, account_state, installed_key_blobs, key_blob, missing_keys, root_state
from vpsharden.config import HardenConfig
from vpsharden.docker import DAEMON_JSON, configure_daemon, daemon_configured
from vpsharden.edits import count_directive, get_directive
from vpsharden.sshd import config_files, harden_dropin, harden_main_config, include_paths


class TestSshdConfig:
    """Tests for sshd_config rewriting."""

    def test_port_line_only_touched_when_present(self):
        config = HardenConfig()
        assert "Port" not in harden_main_config("UsePAM yes\n", config)
        assert get_directive(harden_main_config("Port 2200\n", config), "Port") == "22"

    def test_custom_port_is_added(self):
        updated = harden_main_config("UsePAM yes\n", HardenConfig(ssh_port=2222))
        assert get_directive(updated, "Port") == "2222"

    def test_deprecated_challenge_response_fixed_in_place(self):
        updated = harden_main_config("ChallengeResponseAuthentication yes\n", HardenConfig())
        assert get_directive(updated, "ChallengeResponseAuthentication") == "no"
        assert count_directive(updated, "ChallengeResponseAuthentication") == 1

    def test_match_blocks_keep_their_overrides(self):
        content = (
            "PasswordAuthentication yes\n"
            "Match Address 10.0.0.0/8\n"
            "    PasswordAuthentication yes\n"
        )
        updated = harden_main_config(content, HardenConfig())
        assert updated.startswith("PasswordAuthentication no\n")
        assert updated.count("PasswordAuthentication yes") == 1
        assert updated.index("PermitRootLogin no") < updated.index("Match Address")

    def test_dropin_never_gains_directives(self):
        assert harden_dropin("ClientAliveInterval 120\n", HardenConfig()) == "ClientAliveInterval 120\n"
        assert harden_dropin("PermitRootLogin yes\n", HardenConfig()) == "PermitRootLogin no\n"

    def test_include_paths(self, ctx, fake_host):
        fake_host.files["/etc/ssh/sshd_config.d/10-a.conf"] = ""
        fake_host.files["/etc/ssh/extra.conf"] = ""
        content = "Include /etc/ssh/sshd_config.d/*.conf extra.conf\n"
        assert include_paths(ctx, content) == [
            "/etc/ssh/sshd_config.d/10-a.conf",
            "/etc/ssh/extra.conf",
        ]

    def test_config_files_modes(self, ctx, fake_host):
        fake_host.files["/etc/ssh/sshd_config.d/60-local.conf"] = "X11Forwarding yes\n"
        files = config_files(ctx)
        assert [(path, mode) for path, mode, _ in files] == [
            ("/etc/ssh/sshd_config", "644"),
            ("/etc/ssh/sshd_config.d/60-local.conf", "600"),
        ]


class TestAuthorizedKeys:
    """Tests for authorized_keys parsing and account state."""

    def test_key_blob_skips_options(self):
        blob = ADMIN_KEY.split()[1]
        assert key_blob(ADMIN_KEY) == blob
        assert key_blob(f'from="10.0.0.1",no-pty {ADMIN_KEY}') == blob
        assert key_blob("garbage") is None

    def test_installed_key_blobs_ignores_comments(self):
        text = f"# {ADMIN_KEY}\n\n{OTHER_KEY}\n"
        assert installed_key_blobs(text) == {OTHER_KEY.split()[1]}

    def test_missing_keys_match_on_blob(self, ctx, fake_host):
        fake_host.users["wkenn"] = {"uid": 1001, "groups": ["wkenn"], "home": "/home/wkenn", "password": "L"}
        fake_host.files["/home/wkenn/.ssh/authorized_keys"] = ADMIN_KEY.rsplit(" ", 1)[0] + " renamed@laptop\n"

        assert missing_keys(ctx, "wkenn", [ADMIN_KEY, OTHER_KEY, OTHER_KEY]) == [OTHER_KEY]

    def test_account_state_progression(self, ctx, fake_host):
        assert account_state(ctx, "wkenn") is AccountState.ABSENT

        fake_host.users["wkenn"] = {"uid": 1001, "groups": ["wkenn"], "home": "/home/wkenn", "password": "L"}
        assert account_state(ctx, "wkenn") is AccountState.CREATED

        fake_host.users["wkenn"]["groups"].append("sudo")
        assert account_state(ctx, "wkenn") is AccountState.SUDO_GRANTED

        fake_host.files["/home/wkenn/.ssh/authorized_keys"] = f"{ADMIN_KEY}\n"
        assert account_state(ctx, "wkenn") is AccountState.KEYS_INSTALLED

        fake_host.users["wkenn"]["password"] = "P"
        assert account_state(ctx, "wkenn") is AccountState.ACTIVE

    def test_deploy_needs_full_passwordless_sudo(self, ctx, fake_host):
        fake_host.users["originate-devops"] = {
            "uid": 1002,
            "groups": ["originate-devops", "sudo"],
            "home": "/home/originate-devops",
            "password": "L",
        }
        fake_host.files["/home/originate-devops/.ssh/authorized_keys"] = f"{DEPLOY_KEY}\n"
        fake_host.files["/etc/sudoers.d/originate-devops"] = "originate-devops ALL=(ALL) NOPASSWD:ALL\n"
        assert account_state(ctx, "originate-devops") is AccountState.ACTIVE

        ctx.config = ctx.config.model_copy(update={"deploy_sudo_commands": ("/usr/bin/docker",)})
        fake_host.files["/etc/sudoers.d/originate-devops"] = "originate-devops ALL=(ALL) NOPASSWD:/usr/bin/docker\n"
        assert account_state(ctx, "originate-devops") is AccountState.KEYS_INSTALLED

    def test_root_state(self, ctx, fake_host):
        assert root_state(ctx) is AccountState.ACTIVE

        fake_host.users["root"]["password"] = "L"
        assert root_state(ctx) is AccountState.LOCKED


class TestDockerDaemon:
    """Tests for daemon.json merging."""

    def test_existing_keys_are_kept(self, ctx, fake_host):
        fake_host.files[DAEMON_JSON] = json.dumps({"data-root": "/srv/docker", "live-restore": False})
        ctx.files.begin("docker-daemon")

        assert not daemon_configured(ctx)
        configure_daemon(ctx)

        settings = json.loads(fake_host.files[DAEMON_JSON])
        assert settings["data-root"] == "/srv/docker"
        assert settings["live-restore"] is True
        assert settings["log-opts"] == {"max-size": "10m", "max-file": "3"}
        assert daemon_configured(ctx)

    def test_invalid_json_is_replaced(self, ctx, fake_host):
        fake_host.files[DAEMON_JSON] = "{not json"
        ctx.files.begin("docker-daemon")

        assert not daemon_configured(ctx)
        configure_daemon(ctx)

        assert json.loads(fake_host.files[DAEMON_JSON])["log-driver"] == "json-file"
        assert ctx.files.backup_path(DAEMON_JSON) is not None
