# This package handles conversational memory and context windows

# +---------------------+
# |      Memory         |   (Long-lived, shared across conversations)
# |---------------------|
# | Facts, preferences  |
# | Tool usage          |
# | Confidence, expiry  |
# +---------------------+

# +---------------------+
# |    Conversation     |   (Archival, append-only)
# |---------------------|
# | Ordered messages    |
# | Summary             |
# | Tool call results   |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |        Context window        |   (Token-budgeted working set)
# |------------------------------|
# | Recent messages              |
# | High-value messages          |
# | Relevant memories (ranked)   |
# +------------------------------+
#         |
#         v
#   [agent run / tool call]
