"""Expense categorization engine: pattern matching, merchant canonicalization and confidence learning."""
