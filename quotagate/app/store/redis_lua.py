"""Redis Lua scripts for the shared counter store.

Each script runs atomically on the Redis server, so purge/insert/count
and check/increment/mark sequences can never interleave between
instances. A script either completes or leaves no trace.
"""

# Sliding window hit.
# KEYS[1] = ordered set key
# ARGV = now_ms, window_ms, max_requests, member
# Returns {allowed, count, oldest_score}
SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local window = tonumber(ARGV[2])
    local max_requests = tonumber(ARGV[3])
    local member = ARGV[4]

    -- Purge entries scored strictly below now - window
    redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. (now - window))

    redis.call('ZADD', key, now, member)
    local count = redis.call('ZCARD', key)

    local allowed = 1
    if count > max_requests then
        -- Roll back the tentative entry
        redis.call('ZREM', key, member)
        allowed = 0
    end

    local oldest_score = now
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    if oldest[2] then
        oldest_score = tonumber(oldest[2])
    end

    redis.call('PEXPIRE', key, window)
    return {allowed, count, oldest_score}
"""

# Fixed window hit.
# KEYS[1] = counter key (window start is part of the key)
# ARGV = window_ms
# Returns {count, ttl_ms}
FIXED_WINDOW_SCRIPT = """
    local count = redis.call('INCR', KEYS[1])
    local ttl = redis.call('PTTL', KEYS[1])
    if ttl < 0 then
        redis.call('PEXPIRE', KEYS[1], ARGV[1])
        ttl = tonumber(ARGV[1])
    end
    return {count, ttl}
"""

# Check and increment one or more quota ledgers, setting warning bits.
# KEYS = ledger hash keys
# ARGV[1] = '1' to enforce limits, '0' to record unconditionally
# Then per key: amount, limit (-1 for none), expire_at, n, threshold_1..n
# Returns {allowed, failed_index, used_list, malformed_list, fired_lists}
APPLY_LEDGERS_SCRIPT = """
    local enforce = ARGV[1] == '1'
    local ledgers = {}
    local used = {}
    local malformed = {}
    local pos = 2

    for i, key in ipairs(KEYS) do
        local ledger = {key = key, thresholds = {}}
        ledger.amount = tonumber(ARGV[pos])
        ledger.limit = tonumber(ARGV[pos + 1])
        ledger.expire_at = tonumber(ARGV[pos + 2])
        local n = tonumber(ARGV[pos + 3])
        for j = 1, n do
            ledger.thresholds[j] = tonumber(ARGV[pos + 3 + j])
        end
        pos = pos + 4 + n

        -- Missing counters start at 0; anything but a plain integer is malformed
        local raw = redis.call('HGET', key, 'used')
        ledger.used = 0
        ledger.malformed = 0
        ledger.missing = not raw
        if raw then
            if string.match(raw, '^%-?%d+$') then
                ledger.used = tonumber(raw)
            else
                ledger.malformed = 1
            end
        end

        ledgers[i] = ledger
        used[i] = ledger.used
        malformed[i] = ledger.malformed
    end

    if enforce then
        for i, ledger in ipairs(ledgers) do
            if ledger.limit >= 0 then
                local projected = ledger.used + ledger.amount
                if projected > ledger.limit or (ledger.amount == 0 and ledger.used >= ledger.limit) then
                    return {0, i, used, malformed, {}}
                end
            end
        end
    end

    local fired = {}
    for i, ledger in ipairs(ledgers) do
        local newly = {}
        -- Zero amounts never create a ledger
        if not (ledger.amount == 0 and ledger.missing) then
            if ledger.malformed == 1 then
                redis.call('HSET', ledger.key, 'used', ledger.amount)
                ledger.used = ledger.amount
            else
                ledger.used = redis.call('HINCRBY', ledger.key, 'used', ledger.amount)
            end
            redis.call('EXPIREAT', ledger.key, ledger.expire_at)
            used[i] = ledger.used

            if ledger.limit > 0 then
                for _, threshold in ipairs(ledger.thresholds) do
                    if ledger.used * 100 >= threshold * ledger.limit then
                        if redis.call('HSETNX', ledger.key, 'warned:' .. threshold, 1) == 1 then
                            table.insert(newly, threshold)
                        end
                    end
                end
            end
        end
        fired[i] = newly
    end

    return {1, 0, used, malformed, fired}
"""
