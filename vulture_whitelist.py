# Vulture whitelist for false positives
# These are unused by our code but required by Python protocols or frameworks


# Worker runner signal handler receives both sig and frame
def _signal_handler_whitelist(sig, frame):
    _ = sig
    _ = frame


# RetrievalTracker.__aexit__ receives the full exception triple
async def _context_manager_whitelist(exc_type, exc_val, exc_tb):
    _ = exc_type
    _ = exc_tb


# FastAPI exception handlers receive the request even when they ignore it
async def _exception_handler_whitelist(request):
    _ = request
