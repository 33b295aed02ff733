"""CRM client core -- domain store, action layer, provider lifecycle.

The store holds the client-side snapshot of companies, contacts, deals and
activities; the action layer performs backend round trips and dispatches
their results; the provider owns both for the lifetime of a signed-in
session. Backends live in ``src.app.crm.backend``.
"""
