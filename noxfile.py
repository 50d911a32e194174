import nox

PYTHON_VERSIONS = ["3.11", "3.12", "3.13"]

# psycopg2-binary ships a compiled module per interpreter; a cached wheel
# built for another Python breaks the PostgreSQL provider at import time.
_C_EXT_PACKAGES = ["psycopg2-binary"]


def _install(session: nox.Session) -> None:
    """Install the commerce engine and its test extra."""
    session.run("poetry", "install", "--all-extras", external=True)
    session.run("pip", "install", "--force-reinstall", "--no-cache-dir", *_C_EXT_PACKAGES)


@nox.session(python=PYTHON_VERSIONS)
def tests(session: nox.Session) -> None:
    _install(session)
    session.run("pytest", *session.posargs)


@nox.session(python=PYTHON_VERSIONS[-1])
def tests_domain(session: nox.Session) -> None:
    """Aggregate rules only: no handlers, no HTTP."""
    _install(session)
    session.run("pytest", "-m", "domain")


@nox.session(python=PYTHON_VERSIONS[-1])
def tests_checkout(session: nox.Session) -> None:
    """Checkout, reservation and wallet flows, the paths guarded by locks and version checks."""
    _install(session)
    session.run("pytest", "tests/checkout", "tests/reservations", "tests/wallet", "tests/coupons")


@nox.session(python=PYTHON_VERSIONS[-1])
def coverage(session: nox.Session) -> None:
    _install(session)
    session.run("pytest", "--cov=commerce", "--cov-report=term-missing")
