"""Redis Lua scripts for the shared sliding window.

The prune/count/admit sequence runs as a single script so that no two
requests, from any process, can both observe and take the last free slot.
"""

# KEYS[1]  sorted set for one rate limit key (score = admission time in ms)
# ARGV[1]  window length in ms
# ARGV[2]  max requests per window
# ARGV[3]  unique member id for this request
# ARGV[4]  caller-supplied now in ms, or -1 to use the Redis server clock
#
# Returns {allowed, count_before, now, oldest, newest}
SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local window = tonumber(ARGV[1])
    local limit = tonumber(ARGV[2])
    local member = ARGV[3]
    local now = tonumber(ARGV[4])

    -- One authoritative clock for every process
    if now == nil or now < 0 then
        local t = redis.call('TIME')
        now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
    end

    -- Discard entries strictly older than the window start
    redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. (now - window))

    local count = redis.call('ZCARD', key)
    if count < limit then
        redis.call('ZADD', key, now, member)
        -- Cold keys are collected once the newest entry ages out
        redis.call('PEXPIRE', key, window)
        local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        return {1, count, now, tonumber(oldest[2]), now}
    end

    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local newest = redis.call('ZRANGE', key, -1, -1, 'WITHSCORES')
    return {0, count, now, tonumber(oldest[2]), tonumber(newest[2])}
"""

# KEYS[1]  sorted set for one rate limit key
# ARGV[1]  window length in ms
# ARGV[2]  caller-supplied now in ms, or -1 for the server clock
#
# Returns the number of entries inside the window without admitting.
PEEK_SCRIPT = """
    local key = KEYS[1]
    local window = tonumber(ARGV[1])
    local now = tonumber(ARGV[2])
    if now == nil or now < 0 then
        local t = redis.call('TIME')
        now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
    end
    return redis.call('ZCOUNT', key, now - window, '+inf')
"""
