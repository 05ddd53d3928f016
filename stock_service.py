import logging
from datetime import datetime
from sqlalchemy import func
from models import (db, StockItem, StockMovement, Recipe, MenuItem, LowStockAlert,
                    MOVEMENT_TYPES, record_audit)
from errors import ValidationError, NotFoundError, ConflictError
from validators import as_float, as_int, as_str, one_of, require_fields
from caching import invalidate_menu

logger = logging.getLogger(__name__)


def get_stock_item(branch_id, stock_item_id):
    item = db.session.get(StockItem, stock_item_id)
    if not item or item.branch_id != branch_id:
        raise NotFoundError('Stock item not found')
    return item


def list_stock_items(branch_id, low_only=False, search=None):
    query = StockItem.query.filter_by(branch_id=branch_id)
    if low_only:
        query = query.filter(StockItem.quantity <= StockItem.min_threshold)
    if search:
        query = query.filter(StockItem.name.ilike(f'%{search}%'))
    return query.order_by(StockItem.name).all()


def create_stock_item(branch_id, data, user_id=None):
    require_fields(data, 'name')
    item = StockItem(
        branch_id=branch_id,
        name=as_str(data['name'], 'name'),
        sku=data.get('sku'),
        quantity=as_float(data.get('quantity', 0), 'quantity', minimum=0),
        unit=data.get('unit'),
        min_threshold=as_float(data.get('min_threshold', 0), 'min_threshold', minimum=0)
    )
    db.session.add(item)
    db.session.flush()
    if item.quantity:
        db.session.add(StockMovement(stock_item_id=item.id, change=item.quantity, type='RESTOCK',
                                     reason='Opening stock', user_id=user_id))
    record_audit('STOCK_CREATE', user_id, branch_id, stock_item_id=item.id, name=item.name)
    db.session.commit()
    invalidate_menu(branch_id)
    return item


def update_stock_item(item, data, user_id=None):
    """Edit descriptive fields. Quantity only changes through movements."""
    if 'quantity' in data:
        raise ValidationError('Use a stock movement to change quantity')
    if 'name' in data:
        item.name = as_str(data['name'], 'name')
    if 'sku' in data:
        item.sku = data['sku']
    if 'unit' in data:
        item.unit = data['unit']
    if 'min_threshold' in data:
        item.min_threshold = as_float(data['min_threshold'], 'min_threshold', minimum=0)
    _check_alert(item)
    record_audit('STOCK_UPDATE', user_id, item.branch_id, stock_item_id=item.id)
    db.session.commit()
    invalidate_menu(item.branch_id)
    return item


def delete_stock_item(item, user_id=None):
    if Recipe.query.filter_by(stock_item_id=item.id).count():
        raise ConflictError('Stock item is used by a recipe')
    branch_id = item.branch_id
    LowStockAlert.query.filter_by(stock_item_id=item.id).delete()
    StockMovement.query.filter_by(stock_item_id=item.id).delete()
    db.session.delete(item)
    record_audit('STOCK_DELETE', user_id, branch_id, stock_item_id=item.id, name=item.name)
    db.session.commit()
    invalidate_menu(branch_id)


def _check_alert(item):
    open_alert = LowStockAlert.query.filter_by(stock_item_id=item.id, is_resolved=False).first()
    if item.is_low:
        if open_alert:
            open_alert.current_quantity = item.quantity
            open_alert.min_threshold = item.min_threshold
        else:
            db.session.add(LowStockAlert(stock_item_id=item.id, branch_id=item.branch_id,
                                         current_quantity=item.quantity,
                                         min_threshold=item.min_threshold))
            logger.warning('Low stock: %s (%s %s, threshold %s)', item.name,
                           item.quantity, item.unit or '', item.min_threshold)
    elif open_alert:
        open_alert.is_resolved = True
        open_alert.resolved_at = datetime.utcnow()


def apply_movement(item, change, movement_type, reason=None, user_id=None,
                   order_id=None, reference=None):
    """Change the quantity and write the ledger row. The caller commits."""
    item.quantity = round((item.quantity or 0) + change, 6)
    movement = StockMovement(stock_item_id=item.id, change=change, type=movement_type,
                             reason=reason, order_id=order_id, user_id=user_id,
                             reference=reference)
    db.session.add(movement)
    _check_alert(item)
    return movement


def record_movement(branch_id, stock_item_id, data, user_id=None):
    item = get_stock_item(branch_id, as_int(stock_item_id, 'stock_item_id'))
    change = as_float(data.get('change'), 'change')
    if change == 0:
        raise ValidationError('change cannot be zero')
    movement_type = one_of(data.get('type', 'MANUAL'), 'type', MOVEMENT_TYPES)
    if movement_type == 'CONSUMPTION':
        raise ValidationError('Consumption movements are written by orders')
    if movement_type == 'RESTOCK' and change < 0:
        raise ValidationError('Restock change must be positive')
    if movement_type == 'WASTE' and change > 0:
        raise ValidationError('Waste change must be negative')
    try:
        movement = apply_movement(item, change, movement_type, data.get('reason'), user_id,
                                  reference=data.get('reference'))
        record_audit('STOCK_MOVE', user_id, branch_id, stock_item_id=item.id,
                     change=change, type=movement_type)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info('Stock movement %s %+g on %s (now %s)', movement_type, change, item.name, item.quantity)
    invalidate_menu(branch_id)
    return movement


def bulk_restock(branch_id, updates, reason=None, user_id=None):
    """Restock many items at once. Either every line is applied or none."""
    if not isinstance(updates, list) or not updates:
        raise ValidationError('updates must be a non-empty list')
    movements = []
    try:
        for line in updates:
            item = get_stock_item(branch_id, as_int(line.get('stock_item_id'), 'stock_item_id'))
            quantity = as_float(line.get('quantity'), 'quantity', positive=True)
            movements.append(apply_movement(item, quantity, 'RESTOCK',
                                            line.get('reason') or reason or 'Restock',
                                            user_id, reference=line.get('reference')))
        record_audit('STOCK_BULK_RESTOCK', user_id, branch_id, lines=len(movements))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info('Bulk restock of %d items in branch %s', len(movements), branch_id)
    invalidate_menu(branch_id)
    return movements


def list_movements(item, limit=50, offset=0, movement_type=None):
    query = StockMovement.query.filter_by(stock_item_id=item.id)
    if movement_type:
        query = query.filter_by(type=movement_type)
    total = query.count()
    rows = query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()) \
        .offset(offset).limit(limit).all()
    return rows, total


# Order driven stock changes
def consume_for_order(order, user_id=None):
    reference = f'order_{order.id}'
    for order_item in order.items:
        for recipe in Recipe.query.filter_by(menu_item_id=order_item.menu_item_id).all():
            used = recipe.qty_per_serving * order_item.quantity
            if not used:
                continue
            apply_movement(recipe.stock_item, -used, 'CONSUMPTION',
                           f'Used for {order_item.quantity} x {order_item.menu_item.name}',
                           user_id, order_id=order.id, reference=reference)


def restore_for_order(order, user_id=None):
    """Give back exactly what consume_for_order took for this order."""
    consumed = db.session.query(StockMovement.stock_item_id, func.sum(StockMovement.change)) \
        .filter_by(order_id=order.id, type='CONSUMPTION') \
        .group_by(StockMovement.stock_item_id).all()
    for stock_item_id, total_change in consumed:
        if not total_change:
            continue
        item = db.session.get(StockItem, stock_item_id)
        apply_movement(item, -total_change, 'ADJUSTMENT', f'Order {order.order_code} cancelled',
                       user_id, order_id=order.id, reference=f'order_{order.id}_cancelled')


def has_consumed(order):
    return StockMovement.query.filter_by(order_id=order.id, type='CONSUMPTION').count() > 0


def inventory_available(menu_item):
    """False when one serving cannot be made from current stock."""
    for recipe in menu_item.recipes:
        if recipe.stock_item and (recipe.stock_item.quantity or 0) < recipe.qty_per_serving:
            return False
    return True


# Recipes
def list_recipes(branch_id, menu_item_id=None):
    query = Recipe.query.join(MenuItem, Recipe.menu_item_id == MenuItem.id) \
        .filter(MenuItem.branch_id == branch_id)
    if menu_item_id:
        query = query.filter(Recipe.menu_item_id == menu_item_id)
    return query.order_by(Recipe.menu_item_id, Recipe.id).all()


def _get_recipe(branch_id, recipe_id):
    recipe = db.session.get(Recipe, recipe_id)
    if not recipe or recipe.menu_item.branch_id != branch_id:
        raise NotFoundError('Recipe not found')
    return recipe


def create_recipe(branch_id, data, user_id=None):
    require_fields(data, 'menu_item_id', 'stock_item_id', 'qty_per_serving')
    menu_item = db.session.get(MenuItem, as_int(data['menu_item_id'], 'menu_item_id'))
    if not menu_item or menu_item.branch_id != branch_id:
        raise NotFoundError('Menu item not found')
    stock_item = get_stock_item(branch_id, as_int(data['stock_item_id'], 'stock_item_id'))
    qty = as_float(data['qty_per_serving'], 'qty_per_serving', minimum=0)
    if Recipe.query.filter_by(menu_item_id=menu_item.id, stock_item_id=stock_item.id).first():
        raise ConflictError('Recipe already exists for this menu item and stock item')
    recipe = Recipe(menu_item_id=menu_item.id, stock_item_id=stock_item.id, qty_per_serving=qty)
    db.session.add(recipe)
    record_audit('RECIPE_CREATE', user_id, branch_id, menu_item_id=menu_item.id,
                 stock_item_id=stock_item.id)
    db.session.commit()
    invalidate_menu(branch_id)
    return recipe


def update_recipe(branch_id, recipe_id, data, user_id=None):
    recipe = _get_recipe(branch_id, recipe_id)
    recipe.qty_per_serving = as_float(data.get('qty_per_serving'), 'qty_per_serving', minimum=0)
    record_audit('RECIPE_UPDATE', user_id, branch_id, recipe_id=recipe.id)
    db.session.commit()
    invalidate_menu(branch_id)
    return recipe


def delete_recipe(branch_id, recipe_id, user_id=None):
    recipe = _get_recipe(branch_id, recipe_id)
    db.session.delete(recipe)
    record_audit('RECIPE_DELETE', user_id, branch_id, recipe_id=recipe_id)
    db.session.commit()
    invalidate_menu(branch_id)


def replace_recipe(menu_item, lines):
    """Swap the ingredient list of a menu item. The caller commits."""
    seen = set()
    for recipe in list(menu_item.recipes):
        db.session.delete(recipe)
    db.session.flush()
    for line in lines or []:
        stock_item = get_stock_item(menu_item.branch_id, as_int(line.get('stock_item_id'), 'stock_item_id'))
        if stock_item.id in seen:
            raise ValidationError('Duplicate stock item in recipe')
        seen.add(stock_item.id)
        db.session.add(Recipe(menu_item_id=menu_item.id, stock_item_id=stock_item.id,
                              qty_per_serving=as_float(line.get('qty_per_serving'),
                                                       'qty_per_serving', minimum=0)))


# Alerts
def low_stock(branch_id):
    return list_stock_items(branch_id, low_only=True)


def list_alerts(branch_id, include_resolved=False):
    query = LowStockAlert.query.filter_by(branch_id=branch_id)
    if not include_resolved:
        query = query.filter_by(is_resolved=False)
    return query.order_by(LowStockAlert.created_at.desc()).all()


def resolve_alert(branch_id, alert_id, user_id=None):
    alert = db.session.get(LowStockAlert, alert_id)
    if not alert or alert.branch_id != branch_id:
        raise NotFoundError('Alert not found')
    alert.is_resolved = True
    alert.resolved_at = datetime.utcnow()
    record_audit('ALERT_RESOLVE', user_id, branch_id, alert_id=alert.id)
    db.session.commit()
    return alert
