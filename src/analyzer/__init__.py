"""Security event correlation & automated response pipeline.

Modules
───────
  fields       — addressable event/threat fields, condition evaluation
  rule_store   — correlation & response rules: load, validate, CRUD
  correlator   — SecurityEvent[] → EventCorrelation[] (windowed grouping)
  threat_intel — static indicator feed with expiry
  classifier   — SecurityEvent / EventCorrelation → ThreatIntelligence
  actions      — handlers for block / lock / restrict / alert / notify / log
  responder    — ThreatIntelligence → AutomatedResponseResult
  sources      — audit-log readers (memory, JSONL tail)
  sinks        — incident store, alert dispatchers, response log
  monitor      — scheduled ingestion / detection / correlation
  metrics      — monitor config, counters, incident summary
  reporter     — write CSV, TXT, JSON, PNG outputs
  pipeline     — wiring and run modes
  cli          — argparse entry-point
"""
