"""
delegation_gateway — delegated access to state tax authorities.

Issues and tracks procurations (digital power-of-attorney grants), selects
the valid grant for a client and jurisdiction, brokers short-lived sessions
against ~27 independently configured state systems, and keeps an
append-only audit log per grant. When no usable grant exists the gateway
answers with an explicitly flagged simulated result.

Built on the Railway-Oriented Programming (ROP) framework for
explicit, composable, functional error handling.
"""

__version__ = "0.1.0"
