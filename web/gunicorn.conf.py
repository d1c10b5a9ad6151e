import os

def cpu():
    return max(1, (os.cpu_count() or 1))

wsgi_app = "config.wsgi:application"
bind = os.getenv("GUNI_BIND", "0.0.0.0:8000")

# Processes (workers)
workers = min(max(2, cpu() * 2), 8)

# Threads per worker; webhook handling blocks on catalog and gateway calls
worker_class = "gthread"
threads = int(os.getenv("GTHREADS", "4"))

# Keep above the worst case of retries against catalog + gateway so the
# gateway sees a response instead of a dropped connection
timeout = int(os.getenv("GUNI_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("GUNI_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNI_KEEPALIVE", "5"))

preload_app = True
max_requests = int(os.getenv("GUNI_MAX_REQUESTS", "2000"))
max_requests_jitter = int(os.getenv("GUNI_MAX_REQUESTS_JITTER", "200"))

# Application logs are JSON (see config.settings.LOGGING); access log on stdout
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNI_LOGLEVEL", "info")
