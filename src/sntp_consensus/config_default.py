config_defaults = {
    "sntp": {
        "name": "sntp_node",
        "ntp_pool": "time.google.com",
        "query": {
            "root_delay_max": 100.0,
            "root_dispersion_max": 100.0,
            "server_response_delay_max": 750,
            "timeout_millis": 30_000,
            "randomize_transmit_fraction": True,
        },
        "poll": {
            "repeat_count": 5,
            "retry_limit": 50,
            "max_addresses_considered": 5,
            "max_concurrent_queries_per_address": 5,
        },
        "reachability": {
            "enabled": True,
            "port": 80,
            "timeout_millis": 5_000,
        },
        "mqtt_sink": {
            "enabled": False,
            "topic": "sntp/trusted_sample",
            "qos": 1,
            "retain": True,
        },
    },
    "mqtt": {
        "broker": {
            "hostname": "localhost",
            "port": 1883,
            "keepalive": 60,
        },
    },
    "node_network": {
        "enable_prometheus_server": False,
        "prometheus_port": 8000,
    },
}
