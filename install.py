#!/usr/bin/env python3
"""Bootstrap a dagmarcom checkout: virtualenv, package install, config files.

Usage:
    python install.py                # production install into .venv
    python install.py --dev          # editable install with test tools
    python install.py --no-venv      # install into the current interpreter
"""

import argparse
import os
import platform
import shutil
import subprocess
import sys

MIN_PYTHON = (3, 11)
PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
RUNTIME_DIRS = ("data", "logs")
CONFIG_TEMPLATES = (("config.example.yaml", "config.yaml"), (".env.example", ".env"))


def _require_python() -> None:
    if sys.version_info < MIN_PYTHON:
        sys.exit(
            "dagmarcom needs Python %d.%d or newer (found %d.%d)."
            % (*MIN_PYTHON, sys.version_info.major, sys.version_info.minor)
        )


def _venv_python(venv_dir: str) -> str:
    if platform.system() == "Windows":
        return os.path.join(venv_dir, "Scripts", "python.exe")
    return os.path.join(venv_dir, "bin", "python")


def _prepare_interpreter(use_venv: bool) -> str:
    """Return the interpreter the package gets installed into."""
    if not use_venv:
        return sys.executable
    venv_dir = os.path.join(PROJECT_DIR, ".venv")
    if os.path.isdir(venv_dir):
        print(f"Reusing {venv_dir}")
    else:
        print(f"Creating {venv_dir}")
        subprocess.check_call([sys.executable, "-m", "venv", venv_dir])
    return _venv_python(venv_dir)


def _install_package(python: str, dev: bool) -> None:
    subprocess.check_call([python, "-m", "pip", "install", "--upgrade", "pip"])
    cmd = [python, "-m", "pip", "install"]
    cmd += ["-e", ".[dev]"] if dev else ["."]
    print("Running: " + " ".join(cmd[1:]))
    subprocess.check_call(cmd, cwd=PROJECT_DIR)


def _prepare_files() -> None:
    for name in RUNTIME_DIRS:
        os.makedirs(os.path.join(PROJECT_DIR, name), exist_ok=True)

    for template, target in CONFIG_TEMPLATES:
        target_path = os.path.join(PROJECT_DIR, target)
        template_path = os.path.join(PROJECT_DIR, template)
        if os.path.exists(target_path):
            print(f"Keeping existing {target}")
        elif os.path.exists(template_path):
            shutil.copy(template_path, target_path)
            print(f"Wrote {target} (from {template})")


def _print_next_steps(use_venv: bool) -> None:
    steps = ["Put OPENAI_API_KEY and the WhatsApp token/phone number id into .env"]
    if use_venv:
        activate = r".\.venv\Scripts\activate" if platform.system() == "Windows" else "source .venv/bin/activate"
        steps.append(f"Activate the environment: {activate}")
    steps += [
        "Validate: python -m dagmarcom config-check",
        "Run (one process per database): python -m dagmarcom start",
        "Cron one-shots: python -m dagmarcom cleanup | process-email",
    ]
    print("\ndagmarcom is installed. Next:")
    for number, step in enumerate(steps, 1):
        print(f"  {number}. {step}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Install dagmarcom")
    parser.add_argument("--dev", action="store_true", help="editable install with pytest")
    parser.add_argument("--no-venv", action="store_true", help="skip creating .venv")
    args = parser.parse_args()

    _require_python()
    python = _prepare_interpreter(not args.no_venv)
    _install_package(python, args.dev)
    _prepare_files()
    _print_next_steps(not args.no_venv)


if __name__ == "__main__":
    main()
