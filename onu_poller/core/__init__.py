"""
Core package: configuration, SNMP protocol client, decoding rules and errors.
"""
