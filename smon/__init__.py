"""SMon: SNMP traffic/CPU polling and reachability monitoring core."""
