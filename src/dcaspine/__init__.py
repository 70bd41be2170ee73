"""dcaspine - distributed execution scheduler for dollar-cost-averaging plans.

Manifesto:
    Recurring purchases must run on time, exactly once per step, from any
    number of service instances. dcaspine provides the locks, the
    transactional execution engine and the tick orchestrator that make
    that hold.

Packages:
    core            errors, logging, settings, cache, models, money, ORM
    scheduling      locks, repository, scanner, engine, orchestrator
    pricing         cached price oracle
    ledger          settlement ledger clients
    notifications   owner notifications
    cli             Typer command line

Tags:
    dcaspine, dca, scheduling, package-overview

Doc-Types:
    package-overview
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
