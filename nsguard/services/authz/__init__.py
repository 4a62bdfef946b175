"""
nsguard Authorization
----------------------
Answers "can principal P do verb V on resource R in namespace N".

Modules:
  evaluator.py    - binding walk + rule matching, decision cache, fail-closed errors
  identity.py     - group resolution (static or external HTTP provider)
  context.py      - deadline / cancellation signal shared with the network evaluator
  decision_log.py - bounded log of recent decisions, last query per (principal, namespace)
"""
