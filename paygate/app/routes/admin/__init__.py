# -*- coding: utf-8 -*-
# paygate/app/routes/admin/__init__.py
# Административные ручки (доступ по X-Admin-Api-Key).
