import logging
from multiprocessing import Value

logger = logging.getLogger(__name__)

total_sent_delegate = Value('q', 0)
total_received_delegate = Value('q', 0)
total_dns_answers = Value('q', 0)

# from https://stackoverflow.com/a/43750422
def human_size(bytes, units=[' bytes','KB','MB','GB','TB', 'PB', 'EB']):
    """ Returns a human readable string representation of bytes """
    return str(bytes) + units[0] if bytes < 1024 else human_size(bytes>>10, units[1:])

def _increase(counter, by: int):
    with counter.get_lock():
        counter.value += by

def increase_total_sent_delegate(by: int):
    _increase(total_sent_delegate, by)

def increase_total_received_delegate(by: int):
    _increase(total_received_delegate, by)

def increase_total_dns_answers(by: int):
    _increase(total_dns_answers, by)

def log_stats():
    logger.info(f"total_sent_delegate = {human_size(total_sent_delegate.value)}")
    logger.info(f"total_received_delegate = {human_size(total_received_delegate.value)}")
    logger.info(f"total_dns_answers = {total_dns_answers.value}")
