"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the rent-to-own engine.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. test_reconciliation.py - Equity sums to the purchase price; rows add up
2. test_payment_idempotency.py - Each installment recorded and captured once
3. test_pay_atomicity.py - Nothing recorded without a confirmed capture
4. test_contract_races.py - Concurrent writers on one contract serialize

These tests use hypothesis for property-based testing.
"""
