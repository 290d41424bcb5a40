REDIS_ROOM_CHANNEL = "room:channel:{room}" # tenant-prefixed room key - pub/sub channel name
REDIS_HISTORY_KEY = "history:{tenant}:{room}" # tenant id + room key - stream of persisted messages

# **Example `history:{tenant}:{room}` stream entry fields**
# - `id` = message uuid (hex)
# - `tenant` = tenant id
# - `room` = `{tenant}:general` or `{tenant}:dm:{a}:{b}`
# - `sender` = principal id
# - `text` = message body
# - `timestamp` = ISO timestamp (UTC)
