"""
orderbridge - moves Rithum orders into ShipStation and relays tracking back.
"""
__version__ = "1.0.0"
