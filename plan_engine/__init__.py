"""
Payment Plan Engine

Installment schedules for clinic payment plans, with a single derived plan
status, lifecycle operations that never touch settled installments, and a
hash-chained activity log.
"""

__version__ = "1.0.0"
