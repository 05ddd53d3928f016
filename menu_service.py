import os
import uuid
import logging
from flask import current_app
from models import db, Category, MenuItem, Modifier, ProductVariant, OrderItem, record_audit
from errors import ValidationError, NotFoundError, ConflictError
from validators import as_int, as_float, as_bool, as_str, require_fields
from caching import cache, menu_cache_key, invalidate_menu
import stock_service

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}


def allowed_file(filename):
    return '.' in filename and \
           filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def save_image(file):
    """Store an uploaded image under a random name and return its public url."""
    if file is None or not file.filename:
        raise ValidationError('No selected file')
    if not allowed_file(file.filename):
        raise ValidationError('Invalid file type. Allowed types: png, jpg, jpeg, gif, webp')
    folder = current_app.config['IMAGE_UPLOAD_FOLDER']
    os.makedirs(folder, exist_ok=True)
    extension = file.filename.rsplit('.', 1)[1].lower()
    filename = f'{uuid.uuid4()}.{extension}'
    file.save(os.path.join(folder, filename))
    return f'/uploads/images/{filename}', filename


# Categories
def list_categories(branch_id):
    return Category.query.filter_by(branch_id=branch_id) \
        .order_by(Category.position, Category.name).all()


def get_category(branch_id, category_id):
    category = db.session.get(Category, category_id)
    if not category or category.branch_id != branch_id:
        raise NotFoundError('Category not found')
    return category


def create_category(branch_id, data, user_id=None):
    require_fields(data, 'name')
    category = Category(branch_id=branch_id, name=as_str(data['name'], 'name'),
                        position=as_int(data.get('position', 0), 'position'))
    db.session.add(category)
    record_audit('CATEGORY_CREATE', user_id, branch_id, name=category.name)
    db.session.commit()
    invalidate_menu(branch_id)
    return category


def update_category(category, data, user_id=None):
    if 'name' in data:
        category.name = as_str(data['name'], 'name')
    if 'position' in data:
        category.position = as_int(data['position'], 'position')
    record_audit('CATEGORY_UPDATE', user_id, category.branch_id, category_id=category.id)
    db.session.commit()
    invalidate_menu(category.branch_id)
    return category


def delete_category(category, user_id=None):
    if MenuItem.query.filter_by(category_id=category.id).count():
        raise ConflictError('Category still has menu items')
    branch_id = category.branch_id
    db.session.delete(category)
    record_audit('CATEGORY_DELETE', user_id, branch_id, category_id=category.id)
    db.session.commit()
    invalidate_menu(branch_id)


# Menu items
def list_items(branch_id, category_id=None, available_only=False):
    query = MenuItem.query.filter_by(branch_id=branch_id)
    if category_id:
        query = query.filter_by(category_id=category_id)
    if available_only:
        query = query.filter_by(is_available=True)
    return query.order_by(MenuItem.name).all()


def get_item(branch_id, item_id):
    item = db.session.get(MenuItem, item_id)
    if not item or item.branch_id != branch_id:
        raise NotFoundError('Menu item not found')
    return item


def _apply_item_fields(item, data):
    if 'name' in data:
        item.name = as_str(data['name'], 'name')
    if 'price' in data:
        item.price = as_float(data['price'], 'price', minimum=0)
    if 'category_id' in data:
        if data['category_id'] in (None, ''):
            item.category_id = None
        else:
            item.category_id = get_category(item.branch_id, as_int(data['category_id'], 'category_id')).id
    for field in ('description', 'sku', 'image_url'):
        if field in data:
            setattr(item, field, data[field])
    if 'preparation_time' in data:
        item.preparation_time = as_int(data['preparation_time'], 'preparation_time',
                                       minimum=0, required=False)
    if 'is_available' in data:
        item.is_available = as_bool(data['is_available'], True)


def create_item(branch_id, data, user_id=None):
    require_fields(data, 'name', 'price')
    item = MenuItem(branch_id=branch_id, name='', price=0, is_available=True)
    try:
        _apply_item_fields(item, data)
        db.session.add(item)
        db.session.flush()
        for modifier in data.get('modifiers') or []:
            item.modifiers.append(_new_modifier(modifier))
        for variant in data.get('variants') or []:
            item.variants.append(_new_variant(variant))
        if data.get('recipe'):
            stock_service.replace_recipe(item, data['recipe'])
        record_audit('MENU_ITEM_CREATE', user_id, branch_id, menu_item_id=item.id, name=item.name)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info('Menu item %s created in branch %s', item.name, branch_id)
    invalidate_menu(branch_id)
    return item


def update_item(item, data, user_id=None):
    try:
        _apply_item_fields(item, data)
        if 'recipe' in data:
            stock_service.replace_recipe(item, data['recipe'])
        record_audit('MENU_ITEM_UPDATE', user_id, item.branch_id, menu_item_id=item.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    invalidate_menu(item.branch_id)
    return item


def delete_item(item, user_id=None):
    if OrderItem.query.filter_by(menu_item_id=item.id).count():
        raise ConflictError('Menu item has order history; mark it unavailable instead')
    branch_id = item.branch_id
    db.session.delete(item)
    record_audit('MENU_ITEM_DELETE', user_id, branch_id, menu_item_id=item.id, name=item.name)
    db.session.commit()
    invalidate_menu(branch_id)


# Modifiers
def _new_modifier(data):
    require_fields(data, 'name')
    return Modifier(name=as_str(data['name'], 'name'),
                    extra_price=as_float(data.get('extra_price', 0), 'extra_price', minimum=0))


def get_modifier(item, modifier_id):
    modifier = db.session.get(Modifier, modifier_id)
    if not modifier or modifier.menu_item_id != item.id:
        raise NotFoundError('Modifier not found')
    return modifier


def add_modifier(item, data, user_id=None):
    modifier = _new_modifier(data)
    item.modifiers.append(modifier)
    record_audit('MODIFIER_CREATE', user_id, item.branch_id, menu_item_id=item.id, name=modifier.name)
    db.session.commit()
    invalidate_menu(item.branch_id)
    return modifier


def update_modifier(item, modifier, data, user_id=None):
    if 'name' in data:
        modifier.name = as_str(data['name'], 'name')
    if 'extra_price' in data:
        modifier.extra_price = as_float(data['extra_price'], 'extra_price', minimum=0)
    record_audit('MODIFIER_UPDATE', user_id, item.branch_id, modifier_id=modifier.id)
    db.session.commit()
    invalidate_menu(item.branch_id)
    return modifier


def delete_modifier(item, modifier, user_id=None):
    item.modifiers.remove(modifier)
    record_audit('MODIFIER_DELETE', user_id, item.branch_id, modifier_id=modifier.id)
    db.session.commit()
    invalidate_menu(item.branch_id)


# Variants
def _new_variant(data, sort_order=0):
    require_fields(data, 'name')
    return ProductVariant(
        name=as_str(data['name'], 'name'),
        price_adjustment=as_float(data.get('price_adjustment', 0), 'price_adjustment'),
        sort_order=as_int(data.get('sort_order', sort_order), 'sort_order'),
        is_active=as_bool(data.get('is_active'), True)
    )


def get_variant(item, variant_id):
    variant = db.session.get(ProductVariant, variant_id)
    if not variant or variant.menu_item_id != item.id:
        raise NotFoundError('Variant not found')
    return variant


def add_variant(item, data, user_id=None):
    variant = _new_variant(data, sort_order=len(item.variants))
    item.variants.append(variant)
    record_audit('VARIANT_CREATE', user_id, item.branch_id, menu_item_id=item.id, name=variant.name)
    db.session.commit()
    invalidate_menu(item.branch_id)
    return variant


def update_variant(item, variant, data, user_id=None):
    if 'name' in data:
        variant.name = as_str(data['name'], 'name')
    if 'price_adjustment' in data:
        variant.price_adjustment = as_float(data['price_adjustment'], 'price_adjustment')
    if 'sort_order' in data:
        variant.sort_order = as_int(data['sort_order'], 'sort_order')
    if 'is_active' in data:
        variant.is_active = as_bool(data['is_active'], True)
    record_audit('VARIANT_UPDATE', user_id, item.branch_id, variant_id=variant.id)
    db.session.commit()
    invalidate_menu(item.branch_id)
    return variant


def delete_variant(item, variant, user_id=None):
    item.variants.remove(variant)
    record_audit('VARIANT_DELETE', user_id, item.branch_id, variant_id=variant.id)
    db.session.commit()
    invalidate_menu(item.branch_id)


def replace_variants(item, variants, user_id=None):
    """Bulk replace: the given list becomes the item's full variant set."""
    if not isinstance(variants, list):
        raise ValidationError('variants must be a list')
    try:
        new_variants = [_new_variant(v, sort_order=i) for i, v in enumerate(variants)]
        item.variants[:] = new_variants
        record_audit('VARIANT_REPLACE', user_id, item.branch_id, menu_item_id=item.id,
                     count=len(new_variants))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    invalidate_menu(item.branch_id)
    return item.variants


# Customer menu
def _customer_item(item):
    can_make = stock_service.inventory_available(item)
    data = item.to_dict()
    data['variants'] = [v.to_dict() for v in item.variants if v.is_active]
    data['inventory_available'] = can_make
    # Item is available if it's marked as available AND we have enough inventory
    data['is_available'] = bool(item.is_available) and can_make
    return data


def build_customer_menu(branch_id):
    categories = []
    for category in list_categories(branch_id):
        items = [_customer_item(i) for i in sorted(category.items, key=lambda i: i.name)
                 if i.is_available]
        categories.append({**category.to_dict(), 'items': items})
    uncategorized = MenuItem.query.filter_by(branch_id=branch_id, category_id=None,
                                             is_available=True).order_by(MenuItem.name).all()
    if uncategorized:
        categories.append({'id': None, 'branch_id': branch_id, 'name': 'Other', 'position': None,
                           'items': [_customer_item(i) for i in uncategorized]})
    return categories


def customer_menu(branch_id):
    key = menu_cache_key(branch_id)
    menu = cache.get(key)
    if menu is None:
        menu = build_customer_menu(branch_id)
        cache.set(key, menu, timeout=current_app.config.get('MENU_CACHE_TIMEOUT'))
    return menu
