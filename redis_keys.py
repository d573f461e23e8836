REDIS_ROOM_MEMBERS_KEY = "relay:room:members:{room_key}" # room key - set of connection IDs
REDIS_CONN_ROOM_KEY = "relay:conn:room:{connection_id}" # connection id - room key it belongs to
REDIS_CONN_CHANNEL = "relay:conn:channel:{connection_id}" # connection id - pub/sub channel name

# **Membership tracking**
# - On join: `SADD relay:room:members:{key} {connId}` and `SET relay:conn:room:{connId} {key}`,
#   both inside one Lua script so the capacity check cannot race.
# - On leave: `SREM` + `DEL relay:conn:room:{connId}`; the members set is deleted when it empties.
# - Both keys carry MEMBERSHIP_TTL so a crashed instance does not leave rooms full forever.

# **Pub/Sub**
# - Every relay instance subscribes to `relay:conn:channel:{connId}` for each of its open sockets.
# - Messages published are the exact JSON frames the client receives.
