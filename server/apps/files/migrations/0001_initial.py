import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='File',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('source', models.CharField(choices=[('user-device', 'User device'), ('system', 'System'), ('internet', 'Internet'), ('copy', 'Copy')], db_index=True, default='user-device', max_length=64)),
                ('path', models.TextField(help_text='Path relative to the disk root')),
                ('size', models.PositiveBigIntegerField(default=0, help_text='File size in bytes')),
                ('disk', models.CharField(default='public', help_text='STORAGES alias holding the bytes', max_length=64)),
                ('mime', models.CharField(db_index=True, default='application/octet-stream', max_length=255)),
                ('driver', models.CharField(db_index=True, default='other', help_text='Processing driver, "other" when none applies', max_length=64)),
                ('handler', models.CharField(db_index=True, default='original', help_text='Handler that produced the file, "original" if none', max_length=64)),
                ('handler_mode', models.CharField(db_index=True, default='default', help_text='Sub-classification of the handler output', max_length=64)),
                ('title', models.CharField(max_length=255)),
                ('extension', models.CharField(blank=True, max_length=32, null=True, validators=[django.core.validators.RegexValidator('\\A[0-9A-Za-z]+\\Z', 'Extension may only contain letters and digits.')])),
                ('description', models.TextField(blank=True, null=True)),
                ('active', models.BooleanField(db_index=True, default=True, help_text='Inactive files are never served')),
                ('published', models.BooleanField(db_index=True, default=False, help_text='Published files are reachable by their slug')),
                ('slug', models.SlugField(blank=True, max_length=255, null=True)),
                ('options', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('author', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='files', to=settings.AUTH_USER_MODEL)),
                ('parent', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name='modifications', to='files.file')),
            ],
            options={
                'verbose_name': 'File',
                'verbose_name_plural': 'Files',
                'ordering': ['id'],
                'indexes': [models.Index(fields=['parent', 'handler', 'handler_mode'], name='files_parent_handler_idx')],
                'constraints': [models.CheckConstraint(condition=models.Q(('size__gte', 0)), name='files_size_non_negative'), models.UniqueConstraint(condition=models.Q(('published', True)), fields=('slug',), name='files_published_slug_unique')],
            },
        ),
    ]
