"""Decision Engine 2.0 - Decision Lifecycle & Outcome Intelligence"""

__version__ = "2.0.0"
