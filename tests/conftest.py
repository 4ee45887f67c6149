"""Shared pytest fixtures for the rns test suite.

Provides reusable fixtures for:
- A templates directory with four capabilities (two competing navigation
  roots, a state store and an auth capability with a full pack)
- A scaffolded Expo/TypeScript project with manifest, composition file and
  native config files
- Resolved ``Config`` / ``Workspace`` / ``Modulator`` for that project
- A recording fake for the package-manager runner
- Mock subprocess helpers
"""

from __future__ import annotations

import json
import plistlib
import textwrap
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from rns.config import Config
from rns.modulator.manifest import ManifestStore, ProjectInfo
from rns.modulator.modulator import Modulator
from rns.modulator.workspace import Workspace


# ---------------------------------------------------------------------------
# File contents
# ---------------------------------------------------------------------------

COMPOSITION_SOURCE = textwrap.dedent("""\
    // Generated by rns. Capability entries live between the markers below.
    // @rns-marker:imports:start
    // @rns-marker:imports:end
    import { createComposition } from "./types";

    export const composition = createComposition();

    // @rns-marker:providers:start
    // @rns-marker:providers:end

    // @rns-marker:wrappers:start
    // @rns-marker:wrappers:end

    export function runInit() {
      // @rns-marker:init:start
      // @rns-marker:init:end
    }

    // @rns-marker:bindings:start
    // @rns-marker:bindings:end
""")

ANDROID_MANIFEST = textwrap.dedent("""\
    <?xml version="1.0" encoding="utf-8"?>
    <manifest xmlns:android="http://schemas.android.com/apk/res/android">
        <!-- host permissions -->
        <uses-permission android:name="android.permission.VIBRATE" />
        <application android:label="DemoApp">
        </application>
    </manifest>
""")

USER_APP_SOURCE = "export default function App() {\n  return null;\n}\n"

NAV_REACT_NAVIGATION: dict[str, Any] = {
    "id": "nav.react-navigation",
    "name": "React Navigation",
    "version": "1.0.0",
    "category": "navigation",
    "support": {"targets": ["expo", "bare"], "platforms": ["ios", "android"]},
    "slots": [{"slot": "navigation.root", "mode": "single"}],
    "dependencies": {"runtime": ["@react-navigation/native@^6.1.0"]},
    "runtimeContributions": [
        {
            "kind": "provider",
            "order": 10,
            "symbolRef": {"module": "@rns/plugin-nav-react-navigation", "exportName": "NavigationRoot"},
        }
    ],
}

NAV_EXPO_ROUTER: dict[str, Any] = {
    "id": "nav.expo-router",
    "name": "Expo Router",
    "version": "1.0.0",
    "category": "navigation",
    "support": {"targets": ["expo"], "platforms": ["ios", "android", "web"]},
    "slots": [{"slot": "navigation.root"}],
    "dependencies": {"runtime": ["expo-router@~3.5.0"]},
    "runtimeContributions": [
        {
            "kind": "provider",
            "order": 10,
            "symbolRef": {"module": "@rns/plugin-nav-expo-router", "exportName": "ExpoRouterRoot"},
        }
    ],
}

STATE_ZUSTAND: dict[str, Any] = {
    "id": "state.zustand",
    "name": "Zustand store",
    "version": "2.0.0",
    "category": "state",
    "support": {"targets": ["expo", "bare"], "platforms": ["ios", "android"]},
    "slots": [{"slot": "state.store", "mode": "multi"}],
    "dependencies": {"runtime": ["zustand@^4.5.0"]},
}

AUTH_FIREBASE: dict[str, Any] = {
    "id": "auth.firebase",
    "name": "Firebase Auth",
    "version": "1.2.0",
    "category": "auth",
    "description": "Email and social sign-in backed by Firebase",
    "support": {"targets": ["expo", "bare"], "platforms": ["ios", "android"], "languages": ["ts"]},
    "requires": ["state.zustand"],
    "dependencies": {
        "runtime": [
            "@react-native-firebase/app@^20.0.0",
            {"name": "@react-native-firebase/auth", "version": "^20.0.0"},
            "zustand@^4.4.0",
            "@rns/plugin-auth-firebase@workspace:*",
        ],
        "dev": ["@types/react-native-firebase@^1.0.0"],
    },
    "runtimeContributions": [
        {
            "kind": "provider",
            "order": 20,
            "symbolRef": {"module": "@rns/plugin-auth-firebase", "exportName": "AuthProvider"},
            "config": {"persistence": "local"},
        },
        {
            "kind": "init",
            "order": 5,
            "symbolRef": {"module": "@rns/plugin-auth-firebase", "exportName": "initAuth"},
        },
    ],
    "patches": [
        {
            "id": "expo-plugins",
            "type": "data.merge",
            "file": "app.json",
            "value": {"expo": {"plugins": ["@react-native-firebase/app"]}},
        },
        {
            "id": "ios-face-id",
            "type": "keys.ensure",
            "file": "ios/DemoApp/Info.plist",
            "keys": {"NSFaceIDUsageDescription": None},
            "platforms": ["ios"],
        },
        {
            "id": "android-internet",
            "type": "keys.ensure",
            "file": "android/app/src/main/AndroidManifest.xml",
            "keys": {"android.permission.INTERNET": None},
            "platforms": ["android"],
        },
        {
            "id": "gitignore-services",
            "type": "text.insertOnce",
            "file": ".gitignore",
            "anchor": "# rns\n",
            "content": "google-services.json\n",
        },
        {
            "id": "bare-only",
            "type": "text.insertOnce",
            "file": "index.js",
            "anchor": "never",
            "content": "never",
            "targets": ["bare"],
        },
    ],
    "permissions": ["internet", {"id": "biometrics", "mandatory": False}],
}

AUTH_PACK: dict[str, str] = {
    "pack.json": '{"delivery": "workspace"}\n',
    "common/README.md": "# Firebase Auth\n",
    "common/index.ts": "export const common = true;\n",
    "common/debug.log": "ignored\n",
    "variants/expo/ts/index.ts": "export { AuthProvider, initAuth } from './auth';\n",
    "variants/expo/ts/auth.ts": "export const AuthProvider = null;\nexport const initAuth = () => {};\n",
    "variants/expo/ts/config.ts.j2": (
        'export const capability = "{{ capability.id }}";\n'
        "export const provider = \"{{ options.get('provider', 'email') }}\";\n"
        'export const app = "{{ identity.name }}";\n'
    ),
    "variants/expo/ts/provider:google/index.ts": "export const provider = 'google';\n",
    "variants/bare/index.ts": "export const bare = true;\n",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def write_plugin(plugins_dir: Path, descriptor: dict[str, Any], pack: dict[str, str] | None = None) -> Path:
    """Write ``<plugins>/<id-with-dashes>/plugin.json`` plus optional pack files."""
    plugin_dir = plugins_dir / descriptor["id"].replace(".", "-")
    plugin_dir.mkdir(parents=True, exist_ok=True)
    (plugin_dir / "plugin.json").write_text(json.dumps(descriptor, indent=2), encoding="utf-8")
    for rel, content in (pack or {}).items():
        path = plugin_dir / "pack" / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return plugin_dir


def snapshot(root: Path, exclude: tuple[str, ...] = (".rns",)) -> dict[str, bytes]:
    """Map every file under *root* (minus *exclude* prefixes) to its bytes."""
    files = {}
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root).as_posix()
        if path.is_file() and not rel.startswith(exclude):
            files[rel] = path.read_bytes()
    return files


class FakeRunner:
    """Stands in for ``run_command``; records every call.

    ``results`` is consumed per call; once exhausted every call succeeds.
    """

    def __init__(self, results: list[tuple[int, str, str]] | None = None) -> None:
        self.results = list(results or [])
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, cmd, cwd=None, timeout=300, env=None) -> tuple[int, str, str]:
        self.calls.append({"cmd": list(cmd), "cwd": cwd, "timeout": timeout})
        if self.results:
            return self.results.pop(0)
        return (0, "", "")

    @property
    def commands(self) -> list[list[str]]:
        return [call["cmd"] for call in self.calls]


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

@pytest.fixture
def templates_dir(tmp_path: Path) -> Path:
    """Templates root whose ``plugins/`` holds the four test capabilities."""
    root = tmp_path / "templates"
    plugins = root / "plugins"
    write_plugin(plugins, NAV_REACT_NAVIGATION)
    write_plugin(plugins, NAV_EXPO_ROUTER)
    write_plugin(plugins, STATE_ZUSTAND)
    write_plugin(plugins, AUTH_FIREBASE, AUTH_PACK)
    return root


@pytest.fixture
def plugins_dir(templates_dir: Path) -> Path:
    return templates_dir / "plugins"


# ---------------------------------------------------------------------------
# Project
# ---------------------------------------------------------------------------

@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A scaffolded Expo/TypeScript project with an rns manifest."""
    root = tmp_path / "DemoApp"
    root.mkdir()

    store = ManifestStore(root / ".rns" / "rn-init.json", root / ".rns" / "rn-init.lock")
    store.create(
        "0.4.0",
        project=ProjectInfo(target="expo", language="ts", platforms=["ios", "android"]),
        identity={"name": "DemoApp", "bundleId": "com.demo.app"},
    )

    files = {
        "packages/@rns/runtime/composition.ts": COMPOSITION_SOURCE,
        "app.json": json.dumps({"expo": {"name": "DemoApp", "plugins": []}}, indent=2) + "\n",
        "android/app/src/main/AndroidManifest.xml": ANDROID_MANIFEST,
        ".gitignore": "node_modules/\n# rns\n",
        "src/App.tsx": USER_APP_SOURCE,
        "package.json": json.dumps({"name": "demo-app", "private": True}, indent=2) + "\n",
        "package-lock.json": "{}\n",
    }
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    plist = root / "ios" / "DemoApp" / "Info.plist"
    plist.parent.mkdir(parents=True)
    plist.write_bytes(plistlib.dumps({"CFBundleName": "DemoApp"}, fmt=plistlib.FMT_XML))
    return root


@pytest.fixture
def config(project_dir: Path, templates_dir: Path) -> Config:
    return Config(project_root=project_dir, templates_dir=templates_dir)


@pytest.fixture
def workspace(config: Config) -> Workspace:
    return Workspace.build(config)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def modulator(workspace: Workspace, fake_runner: FakeRunner) -> Modulator:
    return Modulator(workspace, runner=fake_runner, report=False)


# ---------------------------------------------------------------------------
# Subprocess mocks
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_subprocess():
    """Mock asyncio subprocess for testing command execution.

    Returns a factory that creates mock subprocess instances with configurable
    stdout, stderr, and return codes.

    Usage:
        def test_command(mock_subprocess):
            proc = mock_subprocess(stdout="output", returncode=0)
            with patch("asyncio.create_subprocess_exec", return_value=proc):
                ...
    """
    def factory(
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
    ) -> AsyncMock:
        mock_proc = AsyncMock()
        mock_proc.communicate = AsyncMock(
            return_value=(stdout.encode("utf-8"), stderr.encode("utf-8"))
        )
        mock_proc.returncode = returncode
        mock_proc.pid = 99999
        mock_proc.kill = MagicMock()
        mock_proc.wait = AsyncMock(return_value=returncode)
        return mock_proc

    return factory
