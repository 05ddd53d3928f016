from flask_caching import Cache

cache = Cache()


def menu_cache_key(branch_id):
    return f'customer-menu:{branch_id}'


def invalidate_menu(branch_id):
    cache.delete(menu_cache_key(branch_id))
