"""Entity linking pass -- contact/company and deal/contact reconciliation.

Provides EntityLinker (the individual linking steps and reports),
LinkingRepository (SQLAlchemy-backed store), and LinkingService which
runs a full pass inside a single transaction.
"""
