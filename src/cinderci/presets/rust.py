# presets/rust.py
# Build/lint/test pipeline for a Rust workspace that embeds a nested repository
# (git submodule) with its own pinned toolchain and enclave crate.
#
#   prepare-for-build: checkout, submodules, toolchain, cargo cache, sccache
#   run-tests:            tests -> JUnit, dirty check, sccache save on main
#   build-and-lint-debug: cargo check, lint, docs, dirty check, cargo + sccache save on main
#   build-release:        cargo check --release (defined, not scheduled)
#
# Caches are only saved from the main branch, and the main branch never restores
# sccache, so what gets saved was built from scratch.
from __future__ import annotations

from typing import Sequence

from ..dsl import (
    check_dirty,
    checkout,
    command,
    define_pipeline,
    docker_executor,
    invoke,
    job,
    param,
    restore_cache,
    run_tests,
    save_cache,
    sh,
    store_artifacts,
    store_test_results,
    unless,
    when,
    workflow,
)
from ..model import Pipeline, Step


DEFAULT_IMAGE = "gcr.io/mobilenode-211420/builder-install:1_14"
DEFAULT_RUSTFLAGS = "-D warnings -C target-cpu=skylake"

DEFAULT_ENVIRONMENT = {
    "SCCACHE_IDLE_TIMEOUT": "1200",
    "SCCACHE_CACHE_SIZE": "1G",
    "SCCACHE_ERROR_LOG": "/tmp/sccache.log",
}

DEFAULT_BUILD_ENVIRONMENT = {
    **DEFAULT_ENVIRONMENT,
    "IAS_MODE": "DEV",
    "SGX_MODE": "SW",
    "RUST_BACKTRACE": "1",
    "SKIP_SLOW_TESTS": "1",
}

SCCACHE_KEY = "v0-sccache-{{ arch }}-{{ .Environment.CIRCLE_JOB }}."
CARGO_KEY = "v0-cargo-{{ arch }}"

# https://doc.rust-lang.org/cargo/guide/cargo-home.html#caching-the-cargo-home-in-ci
CARGO_CACHE_PATHS = (
    "~/.cargo/.crates.toml",
    "~/.cargo/bin",
    "~/.cargo/git/checkout",
    "~/.cargo/git/db",
    "~/.cargo/registry/cache",
    "~/.cargo/registry/index",
)

ON_MAIN = {"equal": ["<< pipeline.git.branch >>", "<< pipeline.parameters.main_branch >>"]}


def _fetch_lines(fetch_dirs: Sequence[str]) -> list[str]:
    return ["time cargo fetch --locked"] + [f"(cd {d} && time cargo fetch --locked)" for d in fetch_dirs]


def _fetch_script(fetch_dirs: Sequence[str]) -> str:
    return "\n".join(["set -x", *_fetch_lines(fetch_dirs)]) + "\n"


def _trim_script(fetch_dirs: Sequence[str]) -> str:
    trim_dirs = ['cargo trim --directory "$(pwd)"']
    trim_dirs += [f'cargo trim --directory "$(pwd)/{d}"' for d in fetch_dirs]
    return "\n".join(
        [
            "set -x",
            "",
            "command -v cargo-install-update >/dev/null || cargo install cargo-update",
            "command -v cargo-trim >/dev/null || cargo install cargo-trim",
            "",
            "cargo install-update --all",
            "",
            "# register the workspace lock files with cargo-trim",
            "mkdir -p ~/.config",
            *trim_dirs,
            "",
            "# drop dependencies no lock file mentions",
            "time cargo trim --orphan-clean",
            "",
            "# cargo-trim sometimes removes git checkouts that are still needed",
            *_fetch_lines(fetch_dirs),
            "",
            "# registry sources can be rebuilt from ~/.cargo/registry/cache",
            "time cargo trim --wipe src",
            "time cargo trim --gc all",
            "cargo trim --query",
            "",
            "time cargo uninstall cargo-trim cargo-update",
        ]
    ) + "\n"


def _commands(nested_repo: str | None, fetch_dirs: Sequence[str], lint_script: str) -> list:
    prepare: list[Step] = [
        invoke("git_submodule"),
    ]
    if nested_repo:
        prepare.append(invoke("rust_version_check"))
    prepare += [
        invoke("install-rust"),
        invoke("restore-cargo-cache"),
        invoke("env_setup"),
        invoke("install-ci-deps"),
        invoke("print_versions"),
        unless(ON_MAIN, invoke("restore-sccache-cache")),
        invoke("enable_sccache"),
        invoke("prefetch-cargo-deps"),
    ]

    cmds = [
        command(
            "print_versions",
            sh(
                "Version Info",
                "rustc --version\n"
                "cargo --version\n"
                "rustup --version\n"
                "sccache --version\n"
                "command -v jq >/dev/null && jq --version || true\n",
            ),
            description="Version Info",
        ),
        command(
            "env_setup",
            sh(
                "Configure Cargo to use git cli",
                "mkdir -p ~/.cargo\n"
                "echo '[net]' >> ~/.cargo/config\n"
                "echo 'git-fetch-with-cli = true' >> ~/.cargo/config\n"
                "\n"
                "if [ -f ~/.gitconfig ]; then\n"
                "  sed -i -e 's/github/git-non-exist-hub/g' ~/.gitconfig\n"
                "fi\n",
            ),
            sh(
                "Set utility environment variables",
                "HOST_TARGET_TRIPLE=\"$(rustc -Vv | sed -n 's/^host: //p')\"\n"
                "echo \"export HOST_TARGET_TRIPLE=\\\"$HOST_TARGET_TRIPLE\\\"\" >> $BASH_ENV\n"
                "echo \"Setting HOST_TARGET_TRIPLE to $HOST_TARGET_TRIPLE\"\n",
            ),
            description="Environment Setup",
        ),
        command(
            "git_submodule",
            sh("Checking out git submodules", "git submodule update --checkout --init --recursive\n"),
        ),
        command(
            "enable_sccache",
            sh(
                "Enable sccache",
                "echo 'export RUSTC_WRAPPER=sccache' >> $BASH_ENV\n"
                "echo 'export CMAKE_C_COMPILER_LAUNCHER=sccache' >> $BASH_ENV\n"
                "echo 'export CMAKE_CXX_COMPILER_LAUNCHER=sccache' >> $BASH_ENV\n"
                "\n"
                "# sccache does not support incremental builds\n"
                "echo 'export CARGO_INCREMENTAL=0' >> $BASH_ENV\n"
                "\n"
                "echo 'export SCCACHE_DIR=$HOME/.cache/sccache' >> $BASH_ENV\n",
            ),
            description="Enabling sccache",
        ),
        command("restore-sccache-cache", restore_cache(SCCACHE_KEY, name="Restore sccache cache")),
        command(
            "save-sccache-cache",
            save_cache(SCCACHE_KEY + "{{ .Revision }}", ["~/.cache/sccache"], name="Save sccache cache"),
        ),
        command(
            "record-sccache-cache-stats",
            sh("Print sccache statistics", "sccache --show-stats"),
            store_artifacts("/tmp/sccache.log", "logs/sccache.log"),
        ),
        command("restore-cargo-cache", restore_cache(CARGO_KEY, name="Restore Cargo cache")),
        command(
            "save-cargo-cache",
            sh("Prepare Cargo cache for saving", _trim_script(fetch_dirs)),
            save_cache(CARGO_KEY + "-{{ .Revision }}", CARGO_CACHE_PATHS, name="Save Cargo cache"),
            invoke("record-cargo-cache-stats"),
        ),
        command(
            "record-cargo-cache-stats",
            sh("Print Cargo cache statistics", "cargo cache\ncargo cache local\n"),
        ),
        command(
            "install-rust",
            sh(
                "Install Rust",
                "command -v rustup >/dev/null || \\\n"
                "  curl https://sh.rustup.rs --tlsv1.2 -sSf | sh -s -- -y --default-toolchain none\n"
                "# installs the toolchain named in rust-toolchain\n"
                "\"$HOME/.cargo/bin/rustup\" show active-toolchain\n",
            ),
        ),
        command(
            "install-ci-deps",
            sh(
                "Install CI dependencies",
                "command -v sccache >/dev/null || cargo install sccache\n"
                "command -v cargo-cache >/dev/null || cargo install cargo-cache\n",
            ),
        ),
        command("prefetch-cargo-deps", sh("Fetch project Cargo dependencies", _fetch_script(fetch_dirs))),
        command("prepare-for-build", checkout(), *prepare),
        command(
            "cargo-check",
            sh(
                "cargo check << parameters.extra_args >>",
                'cargo check --frozen --target "$HOST_TARGET_TRIPLE" << parameters.extra_args >>\n',
            ),
            parameters={"extra_args": param("string", "")},
        ),
        command(
            "run-tests",
            run_tests(
                "<< parameters.test_command >> -- -Zunstable-options --format json --report-time",
                name="Run unit tests",
            ),
            parameters={"test_command": param("string", "cargo test --frozen --no-fail-fast")},
        ),
        command("post-build", invoke("record-sccache-cache-stats")),
        command(
            "post-test",
            store_test_results("/tmp/test-results"),
            store_artifacts("/tmp/test-results"),
        ),
        command("lint", sh("Linting", f"{lint_script}\n")),
        command("generate-docs", sh("Generate Documentation", "cargo doc --no-deps\n")),
        command("check-dirty-git", check_dirty("Checking dirty git")),
    ]

    if nested_repo:
        cmds.append(
            command(
                "rust_version_check",
                # the nested repository may have moved to another toolchain without us
                sh("Rust Version Check", f"cmp -l rust-toolchain {nested_repo}/docker/rust-toolchain\n"),
                description="Rust Version Check",
            )
        )
    return cmds


def rust_pipeline(
    *,
    main_branch: str = "main",
    image: str = DEFAULT_IMAGE,
    resource_class: str = "xlarge",
    nested_repo: str | None = "mobilecoin",
    fetch_dirs: Sequence[str] = ("mobilecoin/consensus/enclave/trusted",),
    rustflags: str = DEFAULT_RUSTFLAGS,
    lint_script: str = "./tools/lint.sh",
) -> Pipeline:
    """
    The Rust workspace pipeline.

    Args:
        main_branch: Default of the `main_branch` pipeline parameter; caches are saved only there
        image: Builder image with the toolchain prerequisites installed
        resource_class: Executor size
        nested_repo: Submodule whose docker/rust-toolchain must match ours (None to skip the check)
        fetch_dirs: Extra crates with their own Cargo.lock to fetch and trim
        rustflags: RUSTFLAGS for the debug build and the tests
        lint_script: Lint entry point, relative to the checkout
    """
    build_env = dict(DEFAULT_BUILD_ENVIRONMENT)
    flagged_env = {**build_env, "RUSTFLAGS": rustflags}

    jobs = [
        job(
            "run-tests",
            invoke("prepare-for-build"),
            invoke("run-tests"),
            invoke("check-dirty-git"),
            when(ON_MAIN, invoke("save-sccache-cache")),
            invoke("post-build"),
            invoke("post-test"),
            executor="build-executor",
            env=flagged_env,
            parallelism=1,
        ),
        job(
            "build-and-lint-debug",
            invoke("prepare-for-build"),
            invoke("cargo-check"),
            # lint and the cargo cache live here: this job finishes before run-tests
            invoke("lint"),
            invoke("generate-docs"),
            invoke("check-dirty-git"),
            when(ON_MAIN, invoke("save-cargo-cache"), invoke("save-sccache-cache")),
            invoke("post-build"),
            executor="build-executor",
            env=flagged_env,
        ),
        job(
            "build-release",
            invoke("prepare-for-build"),
            invoke("cargo-check", extra_args="--release"),
            invoke("check-dirty-git"),
            when(ON_MAIN, invoke("save-sccache-cache")),
            invoke("post-build"),
            executor="build-executor",
            env=build_env,
        ),
    ]

    return define_pipeline(
        parameters={
            "main_branch": param("string", main_branch, "Branch whose builds save caches"),
        },
        executors=[docker_executor("build-executor", image, resource_class=resource_class)],
        commands=_commands(nested_repo, list(fetch_dirs), lint_script),
        jobs=jobs,
        # build-release is defined but not scheduled
        workflows=[workflow("build-and-run-tests", "run-tests", "build-and-lint-debug")],
    )
