"""Tests for path and verification-command allow-lists."""

import json

import pytest

from room_orchestrator.core.safety import (
    UnsafePathError,
    check_verification_command,
    is_editable,
    is_safe_relative_path,
    resolve_in_workspace,
    sanitize_file_list,
    split_command,
)


@pytest.fixture
def node_workspace(tmp_dir):
    (tmp_dir / "package.json").write_text(json.dumps({"scripts": {"test": "vitest", "lint": "eslint ."}}))
    return tmp_dir


class TestPaths:
    @pytest.mark.parametrize("path", ["src/app.ts", "README.md", "a/b/c.py"])
    def test_safe_paths(self, path):
        assert is_safe_relative_path(path) is True

    @pytest.mark.parametrize("path", ["", "  ", "/etc/passwd", "../outside.ts", "src/../../x.ts", "C:\\win.ts"])
    def test_unsafe_paths(self, path):
        assert is_safe_relative_path(path) is False

    def test_editable_extensions(self):
        assert is_editable("src/app.tsx")
        assert is_editable("deploy/Dockerfile")
        assert not is_editable("assets/logo.png")
        assert not is_editable(".env")

    def test_sanitize_file_list(self):
        files = [
            "./src/app.ts",
            "node_modules/lib/index.js",
            ".git/config",
            "dist/bundle.js",
            "logo.png",
            "../escape.ts",
            "docs/guide.md",
        ]
        assert sanitize_file_list(files) == ["src/app.ts", "docs/guide.md"]

    def test_resolve_in_workspace(self, tmp_dir):
        resolved = resolve_in_workspace(tmp_dir, "src/app.ts")
        assert resolved == (tmp_dir / "src" / "app.ts").resolve()

    @pytest.mark.parametrize(
        "path,message",
        [
            ("../app.ts", "Unsafe path"),
            ("node_modules/x.js", "protected directory"),
            ("secrets.pem", "not editable"),
        ],
    )
    def test_resolve_rejects(self, tmp_dir, path, message):
        with pytest.raises(UnsafePathError, match=message):
            resolve_in_workspace(tmp_dir, path)

    def test_resolve_rejects_symlink_escape(self, tmp_dir):
        outside = tmp_dir / "outside"
        outside.mkdir()
        root = tmp_dir / "ws"
        root.mkdir()
        (root / "linked").symlink_to(outside, target_is_directory=True)
        with pytest.raises(UnsafePathError, match="outside the workspace"):
            resolve_in_workspace(root, "linked/app.ts")


class TestVerificationCommands:
    def test_split_rejects_shell_syntax(self):
        assert split_command("npm test && rm -rf /") is None
        assert split_command("npm test | tee out") is None
        assert split_command("echo $(whoami)") is None
        assert split_command("npm run 'unterminated") is None
        assert split_command("npm run test") == ["npm", "run", "test"]

    def test_defined_script_allowed(self, node_workspace):
        argv, reason = check_verification_command(node_workspace, "npm run test")
        assert argv == ["npm", "run", "test"]
        assert reason is None

    def test_undefined_script_rejected(self, node_workspace):
        argv, reason = check_verification_command(node_workspace, "npm run build")
        assert argv is None
        assert "not defined" in reason

    def test_missing_manifest_rejects_script(self, tmp_dir):
        argv, reason = check_verification_command(tmp_dir, "pnpm run test")
        assert argv is None
        assert "package.json" in reason

    def test_yarn_shorthand_script(self, node_workspace):
        assert check_verification_command(node_workspace, "yarn lint")[0] == ["yarn", "lint"]
        assert check_verification_command(node_workspace, "yarn deploy")[0] is None

    def test_blocked_tokens(self, node_workspace):
        argv, reason = check_verification_command(node_workspace, "sudo npm test")
        assert argv is None
        assert "blocked token" in reason

    def test_unknown_program(self, node_workspace):
        argv, reason = check_verification_command(node_workspace, "make test")
        assert argv is None
        assert "not a known" in reason

    def test_non_script_commands_need_no_manifest(self, tmp_dir):
        assert check_verification_command(tmp_dir, "pytest -q")[0] == ["pytest", "-q"]
        assert check_verification_command(tmp_dir, "npm test")[0] == ["npm", "test"]
