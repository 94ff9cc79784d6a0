REDIS_USER_KEY = "user:{connection_id}" # connection id - session hash
REDIS_USERS_KEY = "room:{slug}:users" # room id - set of connection IDs
REDIS_META_KEY = "room:{slug}:meta" # room id - room metadata hash
REDIS_PENDING_KEY = "room:{slug}:pending" # room id - hash of pending join requests
REDIS_MESSAGES_KEY = "room:{slug}:messages" # room id - capped list of messages
REDIS_REMOVED_KEY = "conn:{connection_id}:removed" # short-lived marker after removal
REDIS_KICKED_KEY = "conn:{connection_id}:kicked" # short-lived marker after a kick
REDIS_PENDING_ROOM_KEY = "conn:{connection_id}:pending" # connection id - room it is waiting to join

# **Example `room:{id}:meta` hash fields**
# - `room_id` = `{roomId}`
# - `created_at` / `last_activity_at` = ISO timestamps
# - `capacity` = integer
# - `admin_mode` = no_admin | owner_locked | transferable
# - `admin_connection_id` = connection id or absent
# - `admin_token` = opaque token or absent
