"""Nox session definitions mirroring repository quality gates."""

from __future__ import annotations

import nox

nox.options.sessions = ["lint", "typecheck", "tests"]

SOURCES = ("src", "tests", "noxfile.py")


@nox.session
def lint(session: nox.Session) -> None:
    """Run lint and formatting checks without mutating files."""
    session.install("ruff")
    session.run("ruff", "check", *SOURCES)
    session.run("ruff", "format", "--check", *SOURCES)


@nox.session(name="lint-fix")
def lint_fix(session: nox.Session) -> None:
    """Apply ruff fixes and formatting."""
    session.install("ruff")
    session.run("ruff", "check", "--fix", *SOURCES)
    session.run("ruff", "format", *SOURCES)


@nox.session
def typecheck(session: nox.Session) -> None:
    """Run mypy on the library package with its dependencies installed."""
    session.install("mypy")
    session.install("-e", ".")
    session.run("mypy", "src/playlistz")


@nox.session
def tests(session: nox.Session) -> None:
    """Run pytest with the test extra; extra args are forwarded to pytest."""
    session.install("-e", ".[test]")
    session.run("pytest", *session.posargs)


@nox.session
def smoke(session: nox.Session) -> None:
    """Install the package and make sure the console script starts."""
    session.install(".")
    session.run("playlistz", "--version")


@nox.session(python=False)
def local(session: nox.Session) -> None:
    """Run local toolchain directly from current environment (no virtualenv)."""
    session.run("ruff", "check", "--fix", *SOURCES, external=True)
    session.run("ruff", "format", *SOURCES, external=True)

    session.run("mypy", "src/playlistz", external=True)

    session.run("pytest", external=True)
