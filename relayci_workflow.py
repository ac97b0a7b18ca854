# relayci_workflow.py
# The flat-manager CI: quality gates, an end-to-end upload test, a two-platform
# image build once every gate passed, and a push from master only.
from __future__ import annotations

from relayci import container, image, integration, job, publish_job, service, sh, wf

RUST = container("rust:1-bookworm")
RUST_INPUTS = ["Cargo.toml", "Cargo.lock", "src/**"]
OSTREE = ["libostree-dev"]
REPO = "flatpak/flat-manager"


def workflow():
    return wf(
        job(
            "check",
            sh("Check", "cargo check"),
            requires=["cargo"],
            packages=OSTREE,
            environment=RUST,
            inputs=RUST_INPUTS,
        ),
        job(
            "test",
            sh("Test Suite", "cargo test"),
            requires=["cargo"],
            packages=OSTREE,
            environment=RUST,
            inputs=RUST_INPUTS,
        ),
        integration(
            "e2e",
            compose_file="tests/docker-compose.yml",
            backing=[service("db", ready_command=["pg_isready", "-U", "postgres"])],
            primary=service("flat-manager", ready_url="http://localhost:8080/status"),
            script=["./tests/run-test.py"],
            ready_timeout=120,
        ),
        job(
            "fmt",
            sh("Rustfmt", "rustup component add rustfmt && cargo fmt --all --check"),
            requires=["cargo"],
            environment=RUST,
            inputs=RUST_INPUTS,
        ),
        job(
            "clippy",
            sh("Clippy", "rustup component add clippy && cargo clippy -- -D warnings"),
            requires=["cargo"],
            packages=OSTREE,
            environment=RUST,
            inputs=RUST_INPUTS,
        ),
        job(
            "ruff-lint",
            sh("ruff", "ruff check ."),
            requires=["ruff"],
            inputs=["**/*.py", "pyproject.toml"],
        ),
        job(
            "ruff-format",
            sh("ruff format", "ruff format --check ."),
            requires=["ruff"],
            inputs=["**/*.py", "pyproject.toml"],
        ),
        image(
            "docker-build",
            registry="ghcr.io",
            repository=REPO,
            platforms=["linux/amd64", "linux/arm64"],
            labels={
                "org.opencontainers.image.source": f"ssh://git@github.com:{REPO}.git",
                "org.opencontainers.image.url": f"https://github.com/{REPO}",
            },
            needs=["check", "test", "e2e", "fmt", "clippy", "ruff-lint", "ruff-format"],
            inputs=["Dockerfile", *RUST_INPUTS],
        ),
        publish_job("publish", artifact_from="docker-build", branches=["master"]),
    )
