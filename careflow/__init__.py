"""
Careflow Protocol & Workflow Execution Engine
=============================================

A Python library for running clinical protocols and business workflows as
explicit state machines.  A *definition* describes an ordered graph of steps
with conditional edges, decision points and expected outcomes; an
*execution* drives one subject (a patient or any other record) through that
graph, evaluating branch conditions against observed data, dispatching
side-effecting actions, and recording deviations and outcome measurements.

Completed executions feed an analytics aggregator (completion rates, step
completion, outcome achievement, common deviations), and every mutation is
written to an append-only, hash-chained audit log.  Event triggers run
workflow actions outside any execution, and order sets bundle the orders
that usually go together for an indication.

Persistence and message delivery are external collaborators; in-memory
reference implementations ship with the library.
"""

__version__ = "0.1.0"
