# relayci_workflow.py
# Workflow for relayci itself: lint, tests across Python versions, packaging checks
from __future__ import annotations

from relayci.dsl import cache, job, matrix, sh, wf

DEPS_KEY = "pip-${{ runner.os }}-py${{ matrix.py }}-${{ hashFiles('pyproject.toml') }}"


def workflow():
    return wf(
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests", continue_on_error=True),
        ),

        # Test job - one instance per Python version, each with its own venv cache
        job(
            "test",
            cache("venv", DEPS_KEY, ".venv-${{ matrix.py }}"),
            sh(
                "Install package",
                "test -x .venv-${{ matrix.py }}/bin/python || python${{ matrix.py }} -m venv .venv-${{ matrix.py }}; "
                ".venv-${{ matrix.py }}/bin/pip install -e '.[test]'",
            ),
            sh("Run pytest", ".venv-${{ matrix.py }}/bin/pytest -q"),
            needs=["lint"],
            matrix=matrix("py", ["3.10", "3.11", "3.12"]),
            title="test (py ${{ matrix.py }})",
            timeout=20 * 60,
        ),

        # Packaging check - builds the sdist/wheel once every test instance passed
        job(
            "package",
            sh("Build", "python -m build --outdir dist ."),
            needs=["test"],
        ),

        # Always report, even when something upstream failed
        job(
            "report",
            sh("Status", "echo 'lint/test/package finished'"),
            needs=["package"],
            if_="always()",
        ),
        name="relayci",
    )
